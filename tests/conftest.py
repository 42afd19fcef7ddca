import pytest
import torch

from matrix import Matrix


def pattern_batch(rows: int = 100) -> Matrix:
    """
    The same biased 0/1 pattern repeated on every row
    """
    pattern = [1., 1., 0., 1., 1., 0., 0., 1., 0., 1., 1.]
    return Matrix(torch.tensor([pattern]*rows, dtype=torch.float64), ("B", "I"))


@pytest.fixture
def batch():
    return pattern_batch()


@pytest.fixture
def hand_weights():
    return Matrix.from_rows([[1., 2., 3.], [4., 5., 6.]], ("H", "I"))
