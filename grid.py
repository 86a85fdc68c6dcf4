import numpy as np

"""
grid.py

Dense two dimensional grid of doubles addressed by (x, y). It is the building
block of the Cartesian shear and convergence maps.
"""


class Grid2D:
    """
    Fixed size grid of floats.

    Parameters
    ----------
    size_x: int
        Number of pixels along the first (RA) axis.
    size_y: int
        Number of pixels along the second (Dec) axis.
    values: np.array, optional
        Initial values, of shape (size_x, size_y). The grid keeps its own copy.
    """

    def __init__(self, size_x, size_y, values=None):
        self._values = np.zeros((int(size_x), int(size_y)), dtype=np.float64)
        if values is not None:
            values = np.asarray(values, dtype=np.float64)
            assert values.shape == self._values.shape, f"Expected values of shape {self._values.shape}, got {values.shape}."
            self._values[:] = values

    @classmethod
    def from_array(cls, values):
        values = np.asarray(values)
        return cls(values.shape[0], values.shape[1], values)

    @property
    def size_x(self):
        return self._values.shape[0]

    @property
    def size_y(self):
        return self._values.shape[1]

    @property
    def shape(self):
        return self._values.shape

    @property
    def values(self):
        """Underlying array, indexed [x, y]. Writes go through to the grid."""
        return self._values

    def is_empty(self):
        return self._values.size == 0

    def copy(self):
        return Grid2D(self.size_x, self.size_y, self._values)

    def get(self, x, y):
        """
        Value at (x, y). Indices outside the grid are clamped to the nearest
        border pixel so that reads never fail.
        """
        x = min(max(int(x), 0), self.size_x - 1)
        y = min(max(int(y), 0), self.size_y - 1)
        return self._values[x, y]

    def set(self, x, y, value):
        if not (0 <= x < self.size_x and 0 <= y < self.size_y):
            raise IndexError(f"Pixel ({x}, {y}) outside of a {self.size_x}x{self.size_y} grid.")
        self._values[x, y] = value

    def reset(self):
        self._values[:] = 0.

    def _same_size(self, other):
        return self.shape == other.shape

    def add(self, other):
        """
        Element-wise sum. Grids of different sizes give an empty 0x0 grid,
        which callers detect with `is_empty`.
        """
        if not self._same_size(other):
            return Grid2D(0, 0)
        return Grid2D(self.size_x, self.size_y, self._values + other._values)

    def subtract(self, other):
        if not self._same_size(other):
            return Grid2D(0, 0)
        return Grid2D(self.size_x, self.size_y, self._values - other._values)

    def multiply(self, factor):
        return Grid2D(self.size_x, self.size_y, self._values*factor)

    def get_max(self):
        return self._values.max()

    def get_min(self):
        return self._values.min()

    def get_flux(self):
        return self._values.sum()

    def get_standard_deviation(self):
        """
        Population standard deviation of the grid, computed over every element
        but the first one (pixel (0, 0)).

        Returns
        -------
        float
            Standard deviation, 0 for grids with less than two elements.
        """
        flat = self._values.ravel()[1:]
        n = flat.size
        if n == 0:
            return 0.
        mean = flat.sum()
        variance = (flat**2).sum()/n - mean**2/n**2
        return np.sqrt(max(variance, 0.))

    def get_sigma(self):
        """Population standard deviation over all the elements."""
        if self._values.size == 0:
            return 0.
        return np.std(self._values)

    def apply_threshold(self, threshold):
        """Set to zero every value whose magnitude is below the threshold."""
        self._values[np.abs(self._values) < threshold] = 0.

    def is_local_max(self, x, y):
        """
        True if the value at (x, y) is strictly larger than its 8 neighbours.
        Border pixels are never local maxima.
        """
        if x <= 0 or y <= 0 or x >= self.size_x - 1 or y >= self.size_y - 1:
            return False
        center = self._values[x, y]
        window = self._values[x-1:x+2, y-1:y+2]
        # the center itself is the only element allowed to be >= center
        return np.count_nonzero(window >= center) == 1

    def local_maxima(self):
        """
        Boolean array flagging every interior local maximum of the grid.
        """
        values = self._values
        peaks = np.zeros(values.shape, dtype=bool)
        if values.shape[0] < 3 or values.shape[1] < 3:
            return peaks
        center = values[1:-1, 1:-1]
        inner = np.ones(center.shape, dtype=bool)
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                if dx == 0 and dy == 0:
                    continue
                neighbour = values[1+dx:values.shape[0]-1+dx, 1+dy:values.shape[1]-1+dy]
                inner &= center > neighbour
        peaks[1:-1, 1:-1] = inner
        return peaks

    def __repr__(self):
        return f"Grid2D({self.size_x}, {self.size_y})"
