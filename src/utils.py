import os
import sys
import logging
import numpy as np
import torch
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from sklearn.utils import gen_batches
from torch.utils.data import DataLoader, TensorDataset
from typing import Any, Iterator, List, Sequence, Tuple

from matrix import Matrix


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    '''
    Attach a console handler to the named logger, once
    '''
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logger.addHandler(handler)
    return logger


class SplitRandom:
    '''
    Splittable random generator.

    Every split gives two children whose streams are independent of each
    other and of the parent, and are fully determined by the root seed.
    '''
    def __init__(self, seed: Any = 0):
        if (isinstance(seed, np.random.SeedSequence)):
            self.sequence = seed
        else:
            self.sequence = np.random.SeedSequence(int(seed) & 0xFFFFFFFFFFFFFFFF)

    def split(self) -> Tuple["SplitRandom", "SplitRandom"]:
        # spawn from a fresh copy so splitting the same state twice is repeatable
        base = np.random.SeedSequence(self.sequence.entropy, spawn_key=self.sequence.spawn_key)
        left, right = base.spawn(2)
        return SplitRandom(left), SplitRandom(right)

    def splits(self) -> Iterator["SplitRandom"]:
        '''
        Endless stream of independent generators
        '''
        current = self
        while True:
            child, current = current.split()
            yield child

    def seed(self) -> int:
        '''
        Integer seed derived from this state, for seeding matrix fills
        '''
        return int(self.sequence.generate_state(1, dtype=np.uint32)[0])

    def randint(self, low: int, high: int) -> int:
        '''
        Uniform integer in [low, high)
        '''
        return int(np.random.default_rng(self.sequence).integers(low, high))

    def __repr__(self):
        return "SplitRandom(spawn_key={})".format(self.sequence.spawn_key)


class CyclicBatches:
    '''
    Endless, restartable cycle over a finite list of batches.

    Indexing wraps around, so arbitrarily large indices are cheap and no
    copies of the list are made.
    '''
    def __init__(self, batches: Sequence[Any]):
        self.batches = list(batches)
        if (len(self.batches) == 0):
            raise ValueError("CyclicBatches needs at least one batch")

    def __len__(self):
        return len(self.batches)

    def __getitem__(self, index: int) -> Any:
        return self.batches[index % len(self.batches)]

    def __iter__(self) -> Iterator[Any]:
        while True:
            for batch in self.batches:
                yield batch


def add_bias(data: torch.Tensor) -> Matrix:
    '''
    Prepend a column of ones to a (samples x features) tensor
    '''
    data = torch.as_tensor(data, dtype=torch.float64)
    if (data.dim() == 1):
        data = data.unsqueeze(0)
    ones = torch.ones((data.shape[0], 1), dtype=torch.float64)
    return Matrix(torch.cat([ones, data], dim=1), ("B", "I"))


def mini_batch_slices(rows: int, mini_batch: int) -> List[slice]:
    '''
    Consecutive row slices of size mini_batch, the last one may be smaller
    '''
    if (mini_batch <= 0):
        raise ValueError("mini_batch must be positive, got {}".format(mini_batch))
    if (rows == 0):
        return []
    return list(gen_batches(rows, mini_batch))


def batch_loader(data: torch.Tensor, batch_size: int, shuffle: bool = False) -> List[Matrix]:
    '''
    Split raw samples into biased batch matrices
    '''
    dataset = TensorDataset(torch.as_tensor(data, dtype=torch.float64))
    loader = DataLoader(dataset, batch_size=batch_size, shuffle=shuffle)
    return [add_bias(batch) for (batch,) in loader]


def plot_training_curve(values: Sequence[float], title: str, directory: str, xlabel: str = "Evaluation", ylabel: str = "MSE") -> str:
    '''
    Save a line plot of the values and return the file path
    '''
    if not os.path.exists(directory):
        os.makedirs(directory)
    x = np.arange(1, len(values)+1)
    plt.figure()
    plt.plot(x, np.array(values, dtype=np.float64))
    plt.title(title)
    plt.xlabel(xlabel)
    plt.ylabel(ylabel)
    path = os.path.join(directory, title.replace(" ", "_") + ".png")
    plt.savefig(path)
    plt.close()
    return path
