"""
Stateful session for training a DNN with back-propagation or contrastive
divergence.

A Trainer owns the network, a seed counter, an operation counter and the
learning rate. Training scripts are plain callables taking the Trainer. A
script stops early by returning ``trainer.finish(value)``; the network
trained so far is still handed back by ``run``.
"""
import logging
from typing import Any, Callable, Iterable, List, Tuple

import mlp
import rbm
from matrix import Matrix
from rbm import ConfigurationError

logger = logging.getLogger(__name__)

DNN = List[Matrix]


class Finished:
    """
    Early termination result carrying the value the script ends with
    """
    __slots__ = ("value",)

    def __init__(self, value: Any = None):
        self.value = value

    def __repr__(self):
        return "Finished({!r})".format(self.value)


class Trainer:
    def __init__(self, dnn: DNN, seed: int = 0, count: int = 0, learn_rate: float = 0.001):
        self._nn = list(dnn)
        self._seed = seed
        self._count = count
        self._lr = learn_rate

    # state accessors

    def get_count(self) -> int:
        """
        How many times contra_div or back_prop ran
        """
        return self._count

    def inc_count(self) -> int:
        """
        Increment the count and return the previous value
        """
        previous = self._count
        self._count += 1
        return previous

    def next_seed(self) -> int:
        self._seed += 1
        return self._seed

    def set_learn_rate(self, rate: float):
        self._lr = rate

    def get_learn_rate(self) -> float:
        return self._lr

    def get_dnn(self) -> DNN:
        return list(self._nn)

    def put_dnn(self, dnn: DNN):
        self._nn = list(dnn)

    def pop_last_layer(self) -> Matrix:
        if (len(self._nn) == 0):
            raise ConfigurationError("pop_last_layer: empty dnn, did you forget to push_last_layer?")
        return self._nn.pop()

    def push_last_layer(self, layer: Matrix):
        self._nn.append(layer)

    @staticmethod
    def finish(value: Any = None) -> Finished:
        """
        Terminate the training script with ``value``
        """
        return Finished(value)

    # composite operations

    def feed_forward(self, biased_inputs: Matrix) -> Matrix:
        return mlp.feed_forward(self._nn, biased_inputs)

    def backward(self, biased_hidden: Matrix) -> Matrix:
        """
        Run the RBM layers backward, top layer first
        """
        current = biased_hidden.with_role("B", "H")
        for layer in reversed(self._nn):
            current = rbm.backward(current, layer, self.next_seed())
        return current.with_role("B", "I")

    def back_prop(self, biased_inputs: Matrix, targets: Matrix) -> float:
        """
        One back-propagation step over the entire DNN, returns the error
        before the update
        """
        self.inc_count()
        updated, error = mlp.back_propagate(self._nn, self.get_learn_rate(), biased_inputs, targets)
        self.put_dnn(updated)
        return error

    def contra_div(self, biased_inputs: Matrix):
        """
        Contrastive divergence on the last layer.

        The batch is first sampled up through the lower layers, which stay
        fixed, to give the input of the last layer.
        """
        seed = self.next_seed()
        self.inc_count()
        rate = self.get_learn_rate()
        top = self.pop_last_layer()
        current = biased_inputs
        for layer in self._nn:
            current = rbm.forward(current, layer, self.next_seed())
        self.push_last_layer(rbm.contra_div(rate, top, seed, current))

    def forward_err(self, biased_inputs: Matrix, targets: Matrix) -> float:
        outputs = self.feed_forward(biased_inputs)
        return (targets - outputs.with_role(*targets.role)).mse()

    def reconstruct(self, biased_inputs: Matrix) -> Matrix:
        return mlp.reconstruct(biased_inputs, self._nn, self.next_seed())

    def recon_err(self, biased_inputs: Matrix) -> float:
        """
        Input reconstruction error of the whole stack
        """
        reconstructed = self.reconstruct(biased_inputs)
        return (reconstructed.with_role(*biased_inputs.role) - biased_inputs).mse()


def _unwrap(result: Any) -> Tuple[Any, bool]:
    if (isinstance(result, Finished)):
        return result.value, True
    return result, False


def run(dnn: DNN, script: Callable[[Trainer], Any], learn_rate: float = 0.001) -> Tuple[Any, DNN]:
    """
    Run the script over the DNN and return its value and the final DNN
    """
    trainer = Trainer(dnn, learn_rate=learn_rate)
    value, finished = _unwrap(script(trainer))
    if (finished):
        logger.info("training script finished early after %d updates", trainer.get_count())
    return value, trainer.get_dnn()


def run_steps(dnn: DNN, steps: Iterable[Callable[[Trainer], Any]], learn_rate: float = 0.001) -> Tuple[Any, DNN]:
    """
    Run the steps in order, stopping at the first one that finishes.

    The value is the finishing value, or the last step's result.
    """
    trainer = Trainer(dnn, learn_rate=learn_rate)
    value = None
    for step in steps:
        value, finished = _unwrap(step(trainer))
        if (finished):
            logger.info("training script finished early after %d updates", trainer.get_count())
            break
    return value, trainer.get_dnn()
