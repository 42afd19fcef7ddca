import torch
import numpy as np
from typing import Any, Callable, List, Optional, Tuple


Role = Tuple[Optional[str], Optional[str]]


class DimensionMismatchError(ValueError):
    """
    Raised when a matrix operation is given incompatible shapes or roles
    """


def _kinds_match(a: Optional[str], b: Optional[str]) -> bool:
    return (a is None or b is None or a == b)


class Matrix:
    """
    Dense two dimensional float64 matrix.

    The values are never modified in place: every operation returns a new
    Matrix. ``role`` is a (row kind, column kind) marker such as ("H", "I")
    for hidden x input. Roles are only checked when running with __debug__,
    ``None`` matches any kind.
    """
    __slots__ = ("_data", "role")

    def __init__(self, data: Any, role: Role = (None, None)):
        tensor = torch.as_tensor(data, dtype=torch.float64)
        if (tensor.dim() != 2):
            raise DimensionMismatchError("Matrix needs 2 dimensions, got shape {}".format(tuple(tensor.shape)))
        self._data = tensor
        self.role = role

    @classmethod
    def from_rows(cls, rows: List[List[float]], role: Role = (None, None)) -> "Matrix":
        return cls(torch.tensor(rows, dtype=torch.float64), role)

    @classmethod
    def random(cls, rows: int, cols: int, bounds: Tuple[float, float], seed: int, role: Role = (None, None)) -> "Matrix":
        """
        Uniformly distributed values in [min, max] from a seeded generator.
        The same arguments always give the same matrix.
        """
        low, high = bounds
        generator = torch.Generator(device="cpu")
        generator.manual_seed(int(seed))
        values = torch.rand((rows, cols), generator=generator, dtype=torch.float64)
        return cls(values*(high - low) + low, role)

    @property
    def data(self) -> torch.Tensor:
        return self._data

    @property
    def rows(self) -> int:
        return self._data.shape[0]

    @property
    def cols(self) -> int:
        return self._data.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.rows, self.cols)

    @property
    def elems(self) -> int:
        return self.rows*self.cols

    def with_role(self, rows: Optional[str] = None, cols: Optional[str] = None) -> "Matrix":
        """
        Retag the matrix, sharing the underlying values
        """
        return Matrix(self._data, (rows, cols))

    def _check_roles(self, left: Optional[str], right: Optional[str], op: str):
        if (__debug__ and not _kinds_match(left, right)):
            raise DimensionMismatchError("{}: role {} does not match role {}".format(op, left, right))

    def _check_same_shape(self, other: "Matrix", op: str):
        if (self.shape != other.shape):
            raise DimensionMismatchError("{}: shape {} does not match shape {}".format(op, self.shape, other.shape))
        self._check_roles(self.role[0], other.role[0], op)
        self._check_roles(self.role[1], other.role[1], op)

    def mmult(self, other: "Matrix") -> "Matrix":
        """
        Standard matrix product, (a x b) . (b x c) -> (a x c)
        """
        if (self.cols != other.rows):
            raise DimensionMismatchError("mmult: {} cannot multiply {}".format(self.shape, other.shape))
        self._check_roles(self.role[1], other.role[0], "mmult")
        return Matrix(torch.mm(self._data, other._data), (self.role[0], other.role[1]))

    def mmult_t(self, other: "Matrix") -> "Matrix":
        """
        Multiply by the transpose of ``other``, (a x b) . (c x b)^T -> (a x c).

        Cell (i, j) of the result is the dot product of row i of self with
        row j of other. The transpose is never materialised.
        """
        if (self.cols != other.cols):
            raise DimensionMismatchError("mmult_t: {} cannot multiply transposed {}".format(self.shape, other.shape))
        self._check_roles(self.role[1], other.role[1], "mmult_t")
        out = torch.einsum("ik,jk->ij", self._data, other._data)
        return Matrix(out, (self.role[0], other.role[0]))

    def __add__(self, other: "Matrix") -> "Matrix":
        self._check_same_shape(other, "add")
        return Matrix(self._data + other._data, self.role)

    def __sub__(self, other: "Matrix") -> "Matrix":
        self._check_same_shape(other, "sub")
        return Matrix(self._data - other._data, self.role)

    def __mul__(self, other: Any) -> "Matrix":
        if (isinstance(other, Matrix)):
            self._check_same_shape(other, "mul")
            return Matrix(self._data*other._data, self.role)
        return Matrix(self._data*float(other), self.role)

    def __rmul__(self, other: Any) -> "Matrix":
        if (isinstance(other, Matrix)):
            return other.__mul__(self)
        return Matrix(self._data*float(other), self.role)

    def __neg__(self) -> "Matrix":
        return Matrix(-self._data, self.role)

    def map(self, f: Callable[[torch.Tensor], torch.Tensor]) -> "Matrix":
        """
        Apply an element-wise tensor function, e.g. torch.sigmoid
        """
        out = f(self._data)
        if (tuple(out.shape) != self.shape):
            raise DimensionMismatchError("map: function changed shape {} to {}".format(self.shape, tuple(out.shape)))
        return Matrix(out, self.role)

    def transpose(self) -> "Matrix":
        return Matrix(self._data.t().contiguous(), (self.role[1], self.role[0]))

    @property
    def T(self) -> "Matrix":
        return self.transpose()

    def sum(self) -> float:
        return float(torch.sum(self._data).item())

    def mse(self) -> float:
        """
        Mean of the squared entries
        """
        return float(torch.mean(self._data**2).item())

    def extract_rows(self, start: int, count: int) -> "Matrix":
        if (start < 0 or count < 0 or start + count > self.rows):
            raise DimensionMismatchError("extract_rows: rows {}..{} out of range for {}".format(start, start + count, self.shape))
        return Matrix(self._data[start:start + count].clone(), self.role)

    def set_row(self, index: int, value: float) -> "Matrix":
        """
        Copy of the matrix with every cell of row ``index`` set to ``value``
        """
        out = self._data.clone()
        out[index, :] = value
        return Matrix(out, self.role)

    def set_col(self, index: int, value: float) -> "Matrix":
        """
        Copy of the matrix with every cell of column ``index`` set to ``value``
        """
        out = self._data.clone()
        out[:, index] = value
        return Matrix(out, self.role)

    def allclose(self, other: "Matrix", rtol: float = 1e-9, atol: float = 1e-12) -> bool:
        return (self.shape == other.shape and torch.allclose(self._data, other._data, rtol=rtol, atol=atol))

    def equals(self, other: "Matrix") -> bool:
        return (self.shape == other.shape and torch.equal(self._data, other._data))

    def to_numpy(self) -> np.ndarray:
        return self._data.detach().cpu().numpy().copy()

    def tolist(self) -> List[List[float]]:
        return self._data.tolist()

    def __repr__(self):
        return "Matrix(shape={}, role={})".format(self.shape, self.role)


def mmult(a: Matrix, b: Matrix) -> Matrix:
    return a.mmult(b)


def mmult_t(a: Matrix, b: Matrix) -> Matrix:
    return a.mmult_t(b)


def transpose(a: Matrix) -> Matrix:
    return a.transpose()
