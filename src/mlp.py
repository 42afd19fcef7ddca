import logging
import torch
from typing import List, Sequence, Tuple, Union

import rbm
from matrix import DimensionMismatchError, Matrix
from utils import SplitRandom

logger = logging.getLogger(__name__)

DNN = List[Matrix]


def check_layers(layers: Sequence[Matrix]):
    """
    Each layer's hidden size must be the next layer's input size
    """
    for index in range(len(layers)-1):
        if (layers[index].rows != layers[index+1].cols):
            raise DimensionMismatchError("layer {} has {} hidden units but layer {} has {} inputs".format(index, layers[index].rows, index+1, layers[index+1].cols))


def _activate(biased_inputs: Matrix, layer: Matrix) -> Matrix:
    # (B x I) . (H x I)^T -> (B x H)
    return biased_inputs.mmult_t(layer).map(torch.sigmoid)


def _as_next_input(activation: Matrix) -> Matrix:
    return activation.set_col(0, 1.).with_role("B", "I")


def _activations(layers: Sequence[Matrix], biased_inputs: Matrix) -> List[Matrix]:
    """
    Inputs followed by every layer's output; all but the last have their
    bias column set to 1
    """
    outputs = [biased_inputs]
    current = biased_inputs
    for index, layer in enumerate(layers):
        out = _activate(current, layer)
        if (index < len(layers)-1):
            out = _as_next_input(out)
        outputs.append(out)
        current = out
    return outputs


def feed_forward(layers: Sequence[Matrix], biased_inputs: Matrix) -> Matrix:
    """
    Hidden probabilities of the top layer, (B x H), without sampling
    """
    check_layers(layers)
    return _activations(layers, biased_inputs)[-1]


def forward_error(layers: Sequence[Matrix], biased_inputs: Matrix, targets: Matrix) -> float:
    outputs = feed_forward(layers, biased_inputs)
    return (targets - outputs.with_role(*targets.role)).mse()


def back_propagate(layers: Sequence[Matrix], rate: float, biased_inputs: Matrix, targets: Matrix) -> Tuple[DNN, float]:
    """
    One step of gradient descent on the squared output error of the
    sigmoid stack.

    Returns the updated layers and the output MSE measured before the
    update.
    """
    check_layers(layers)
    if (len(layers) == 0):
        return [], 0.
    activations = _activations(layers, biased_inputs)
    outputs = activations[-1]
    if (outputs.shape != targets.shape):
        raise DimensionMismatchError("back_propagate: output shape {} does not match target shape {}".format(outputs.shape, targets.shape))
    error = outputs.with_role(*targets.role) - targets
    mse = error.mse()
    logger.debug("back_propagate output mse %s", mse)

    # delta of the output layer, (B x H)
    delta = error.with_role(*outputs.role)*outputs.map(lambda t: t*(1. - t))
    updated = list(layers)
    for index in range(len(layers)-1, -1, -1):
        layer = layers[index]
        below = activations[index]
        # (H x B) . (B x I) -> (H x I)
        gradient = delta.transpose().mmult(below).with_role(*layer.role)
        if (index > 0):
            # (B x H) . (H x I) -> (B x I), scaled by the lower activation slope
            delta = delta.mmult(layer)*below.map(lambda t: t*(1. - t))
            # the lower layer's outputs are its hidden units
            delta = delta.with_role("B", "H")
        updated[index] = layer - gradient*rate
    return updated, mse


def reconstruct(biased_inputs: Matrix, layers: Sequence[Matrix], rand: Union[SplitRandom, int] = 0) -> Matrix:
    """
    Sample up through every layer with generate, then back down with
    regenerate
    """
    check_layers(layers)
    streams = rbm.as_random(rand).splits()
    current = biased_inputs
    for layer in layers:
        current = rbm.forward(current, layer, next(streams).seed())
    current = current.with_role("B", "H")
    for layer in reversed(layers):
        current = rbm.backward(current, layer, next(streams).seed())
    return current.with_role("B", "I")
