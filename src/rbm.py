import logging
import torch
from tqdm import tqdm
from typing import Iterable, List, NamedTuple, Sequence, Tuple, Union

from matrix import Matrix
from utils import CyclicBatches, SplitRandom, mini_batch_slices, plot_training_curve

logger = logging.getLogger(__name__)

INFINITY = float("inf")


class ConfigurationError(RuntimeError):
    """
    Programming contract violation, e.g. an invalid Params record or popping
    a layer from an empty network
    """


class Params(NamedTuple):
    rate: float = 0.01          # rate of learning each input
    min_mse: float = 0.001      # min MSE before done
    min_batches: int = 10       # min number of rows to train on
    max_batches: int = 10000    # max number of rows to train on
    mini_batch: int = 5
    seed: int = 0               # random seed

    def validate(self) -> "Params":
        if (self.mini_batch <= 0):
            raise ConfigurationError("mini_batch must be positive, got {}".format(self.mini_batch))
        if (self.min_mse < 0):
            raise ConfigurationError("min_mse must not be negative, got {}".format(self.min_mse))
        if (self.min_batches < 0 or self.max_batches < 0):
            raise ConfigurationError("batch bounds must not be negative, got {} and {}".format(self.min_batches, self.max_batches))
        return self


class LearnResult(NamedTuple):
    weights: Matrix
    label: str          # "maxbatches" or "minmse"
    batches: int
    mse: float
    history: List[float]


def as_random(rand: Union[SplitRandom, int]) -> SplitRandom:
    if (isinstance(rand, SplitRandom)):
        return rand
    return SplitRandom(rand)


def new_rbm(rand: Union[SplitRandom, int], num_inputs: int, num_hidden: int) -> Matrix:
    """
    Create an rbm with small random weights.

    Both sizes count the bias unit, the result is (num_hidden x num_inputs).
    """
    return Matrix.random(num_hidden, num_inputs, (-0.01, 0.01), as_random(rand).seed(), ("H", "I"))


def hidden_probs(weights: Matrix, biased_inputs: Matrix) -> Matrix:
    """
    Probabilities of the hidden layer for a biased input batch, (H x B).

    Row 0 is the position of the hidden bias unit.
    """
    return weights.mmult_t(biased_inputs).map(torch.sigmoid)


def input_probs(weights_t: Matrix, biased_hidden: Matrix) -> Matrix:
    """
    Probabilities of the input layer for a biased hidden batch, (I x B).
    Transposed counterpart of hidden_probs.
    """
    return weights_t.mmult_t(biased_hidden).map(torch.sigmoid)


def sample_binary(probs: Matrix, seed: int) -> Matrix:
    """
    A cell is 1 when its probability is greater than a uniform draw.
    Row 0 holds the bias units and is always 1.
    """
    draws = Matrix.random(probs.rows, probs.cols, (0., 1.), seed)
    samples = (probs.data > draws.data).to(torch.float64)
    samples[0, :] = 1.
    return Matrix(samples, probs.role)


def generate(weights: Matrix, biased_inputs: Matrix, seed: int) -> Matrix:
    """
    Biased hidden sample (H x B) for a biased input batch (B x I)
    """
    return sample_binary(hidden_probs(weights, biased_inputs), seed)


def regenerate(weights_t: Matrix, biased_hidden: Matrix, seed: int) -> Matrix:
    """
    Biased input sample (I x B) for a biased hidden batch (B x H)
    """
    return sample_binary(input_probs(weights_t, biased_hidden), seed)


def forward(biased_inputs: Matrix, weights: Matrix, seed: int) -> Matrix:
    """
    Hidden sample laid out as the input batch of the next layer up
    """
    return generate(weights, biased_inputs, seed).transpose().with_role("B", "I")


def backward(biased_hidden: Matrix, weights: Matrix, seed: int) -> Matrix:
    """
    Input sample laid out as the hidden batch of the next layer down
    """
    return regenerate(weights.transpose(), biased_hidden, seed).transpose().with_role("B", "H")


def energy(weights: Matrix, biased_inputs: Matrix) -> float:
    hxb = hidden_probs(weights, biased_inputs)
    hxi = hxb.mmult(biased_inputs)
    return -(weights*hxi).sum()


def weight_diff(weights: Matrix, biased_batch: Matrix, rand: Union[SplitRandom, int]) -> Matrix:
    """
    CD-1 statistics for one batch: h.v^T - h'.v'^T

    h is sampled from the data, v' is regenerated from h and h' is
    sampled again from v'.
    """
    r1, rest = as_random(rand).split()
    r2, r3 = rest.split()
    hxb = generate(weights, biased_batch, r1.seed())
    ixb = regenerate(weights.transpose(), hxb.transpose(), r2.seed())
    hxb_ = generate(weights, ixb.transpose(), r3.seed())
    positive = hxb.mmult(biased_batch)
    negative = hxb_.mmult_t(ixb)
    return positive - negative


def contrastive_divergence_step(weights: Matrix, biased_batch: Matrix, rate: float, seed: int) -> Tuple[Matrix, Matrix]:
    """
    One CD-1 update of the weights.

    The update is scaled so that its absolute size is ``rate`` times the
    absolute size of the current weights. A zero diff falls back to the
    plain rate.
    """
    diff = weight_diff(weights, biased_batch, seed)
    diffsum = diff.map(torch.abs).sum()
    weightsum = weights.map(torch.abs).sum()
    if (diffsum == 0):
        lrate = rate
    else:
        lrate = rate*weightsum/diffsum
    return weights + diff*lrate, diff


def contra_div(rate: float, weights: Matrix, seed: int, biased_batch: Matrix) -> Matrix:
    """
    Single adaptive CD update over a whole batch
    """
    updated, _ = contrastive_divergence_step(weights, biased_batch, rate, seed)
    return updated


def split_mini_batches(biased_batch: Matrix, mini_batch: int) -> List[Matrix]:
    """
    Consecutive mini-batches of the rows of a batch, the last one may be smaller
    """
    return [biased_batch.extract_rows(s.start, s.stop - s.start) for s in mini_batch_slices(biased_batch.rows, mini_batch)]


def train_mini_batches(params: Params, weights: Matrix, batches: Iterable[Matrix]) -> Matrix:
    """
    Update the weights with one CD step per mini-batch of every batch
    """
    params.validate()
    for batch in batches:
        streams = SplitRandom(params.seed).splits()
        for mini, rand in zip(split_mini_batches(batch, params.mini_batch), streams):
            weights, _ = contrastive_divergence_step(weights, mini, params.rate, rand.seed())
    return weights


def reconstruction_error(weights: Matrix, rand: Union[SplitRandom, int], batches: Sequence[Matrix]) -> float:
    """
    Mean squared error of one generate/regenerate round trip, averaged over
    the batches. The denominator of each batch is 1 + rows*cols.
    """
    batches = list(batches)
    if (len(batches) == 0):
        raise ConfigurationError("reconstruction_error needs at least one batch")
    weights_t = weights.transpose()
    total = 0.
    for batch, r in zip(batches, as_random(rand).splits()):
        r1, r2 = r.split()
        hxb = generate(weights, batch, r1.seed())
        ixb = regenerate(weights_t, hxb.transpose(), r2.seed())
        wd = ixb.transpose() - batch
        mse = wd.map(lambda t: t**2).sum()
        total += mse/(1 + wd.elems)
    return total/len(batches)


def learn_with_result(params: Params, weights: Matrix, batches: Sequence[Matrix], progress: bool = False) -> LearnResult:
    """
    Train on randomly picked batches until the batch limits or the MSE
    threshold stop the loop.

    Roughly one iteration in ten measures the reconstruction error of a
    random batch instead of training on it. The batch counter advances by
    the number of rows trained on.
    """
    params.validate()
    if (len(batches) == 0):
        raise ConfigurationError("learn needs at least one batch")
    if (all(batch.rows == 0 for batch in batches)):
        raise ConfigurationError("learn needs at least one batch with rows")
    cycle = CyclicBatches(batches)
    rand = SplitRandom(params.seed)
    mse = INFINITY
    bnum = 0
    history = []
    learning = tqdm(total=params.max_batches, desc="Starting...", disable=not progress)
    try:
        while True:
            if (bnum > params.max_batches):
                logger.info("maxbatches: stopped after %d rows, mse %s", bnum, mse)
                return LearnResult(weights, "maxbatches", bnum, mse, history)
            if (bnum >= params.min_batches and mse < params.min_mse):
                logger.info("minmse: stopped after %d rows, mse %s", bnum, mse)
                return LearnResult(weights, "minmse", bnum, mse, history)
            r0, rand = rand.split()
            r_eval, rest = r0.split()
            r_pick, r_use = rest.split()
            batch = cycle[r_pick.randint(0, len(cycle))]
            if (r_eval.randint(0, 10) == 0):
                mse = reconstruction_error(weights, r_use, [batch])
                history.append(mse)
                logger.debug("mse %s after %d rows", mse, bnum)
                details = {"batches": bnum, "mse": round(mse, 4)}
                learning.set_description(str(details))
                continue
            weights = train_mini_batches(params._replace(seed=r_use.seed()), weights, [batch])
            bnum += batch.rows
            learning.update(batch.rows)
    finally:
        learning.close()


def learn(params: Params, weights: Matrix, batches: Sequence[Matrix]) -> Matrix:
    return learn_with_result(params, weights, batches).weights


class RBM:
    """
    Restricted Boltzmann Machine
    """
    def __init__(self, num_visible: int, num_hidden: int, params: Params = None, savefile: str = None, weights: Matrix = None):
        """
        num_visible and num_hidden exclude the bias units
        """
        self.num_visible = num_visible
        self.num_hidden = num_hidden
        if (params is None):
            params = Params()
        self.params = params.validate()
        self.savefile = savefile
        if (weights is None):
            self.weights = new_rbm(SplitRandom(self.params.seed), num_visible + 1, num_hidden + 1)
        elif (weights.shape != (num_hidden + 1, num_visible + 1)):
            raise ValueError("Weights of shape {} do not fit {} visible and {} hidden units".format(weights.shape, num_visible, num_hidden))
        else:
            self.weights = weights.with_role("H", "I")
        self.progress = []
        self.stop_label = None

    def transform(self, biased_inputs: Matrix) -> Matrix:
        """
        Hidden probabilities laid out as a (batch x hidden) matrix
        """
        return hidden_probs(self.weights, biased_inputs).transpose()

    def gibbs(self, biased_inputs: Matrix, seed: int) -> Matrix:
        """
        Perform one Gibbs sampling step
        """
        r1, r2 = SplitRandom(seed).split()
        hidden = forward(biased_inputs, self.weights, r1.seed())
        return backward(hidden.with_role("B", "H"), self.weights, r2.seed()).with_role("B", "I")

    def train(self, batches: Sequence[Matrix], progress: bool = False) -> "RBM":
        """
        Train RBM
        """
        result = learn_with_result(self.params, self.weights, batches, progress=progress)
        self.weights = result.weights
        self.progress.extend(result.history)
        self.stop_label = result.label
        if (self.savefile is not None):
            self.save()
        return self

    def reconstruction_error(self, batches: Sequence[Matrix], seed: int = 0) -> float:
        return reconstruction_error(self.weights, seed, batches)

    def energy(self, biased_inputs: Matrix) -> float:
        return energy(self.weights, biased_inputs)

    def save(self, savefile: str = None):
        if (savefile is None):
            savefile = self.savefile
        model = {"W": self.weights.data, "params": dict(self.params._asdict())}
        torch.save(model, savefile)

    def load_rbm(self, savefile: str):
        """
        Load RBM
        """
        model = torch.load(savefile)
        weights = Matrix(model["W"], ("H", "I"))
        if (weights.shape != self.weights.shape):
            raise ValueError("Saved weights of shape {} do not fit an rbm of shape {}".format(weights.shape, self.weights.shape))
        self.weights = weights
        self.params = Params(**model["params"])

    def visualize_training_curve(self, directory: str = "../results/plots/RBM/") -> str:
        """
        Visualize training curve
        """
        plot_title = "Training Curve of RBM {}x{}".format(self.num_visible, self.num_hidden)
        return plot_training_curve(self.progress, plot_title, directory)
