import time
import logging
import torch
from tqdm import trange
from typing import List, Sequence, Tuple

import mlp
import rbm
import trainer
from matrix import Matrix
from rbm import RBM, ConfigurationError, Params, new_rbm
from utils import SplitRandom, plot_training_curve

logger = logging.getLogger(__name__)


class DBN:
    """
    Deep Belief Network
    """
    def __init__(self, input_size: int, layers: list, params: Params = None, fine_tune_rate: float = 0.001, savefile: str = None):
        """
        input_size and layers count units without the bias unit
        """
        self.input_size = input_size
        self.layers = layers
        if (params is None):
            params = Params()
        self.params = params.validate()
        self.fine_tune_rate = fine_tune_rate
        self.savefile = savefile
        self.layer_parameters: List[Matrix] = []
        self.depthwise_training_loss = []
        self.fine_tune_loss = []

    def layer_sizes(self, index: int) -> Tuple[int, int]:
        if (index == 0):
            vn = self.input_size
        else:
            vn = self.layers[index-1]
        return vn, self.layers[index]

    def generate_input_for_layer(self, index: int, batches: Sequence[Matrix], seed: int = 0) -> List[Matrix]:
        """
        Sample the batches up through the layers below ``index``
        """
        if (index == 0):
            return list(batches)
        streams = SplitRandom(seed).splits()
        hidden_batches = []
        for batch in batches:
            x_dash = batch
            for layer in self.layer_parameters[:index]:
                x_dash = rbm.forward(x_dash, layer, next(streams).seed())
            hidden_batches.append(x_dash)
        return hidden_batches

    def train(self, batches: Sequence[Matrix], progress: bool = False):
        """
        Greedy layer-wise pretraining, bottom layer first
        """
        self.layer_parameters = []
        for index, _ in enumerate(self.layers):
            start_time = time.time()
            vn, hn = self.layer_sizes(index)
            params = self.params._replace(seed=self.params.seed + index)
            layer_rbm = RBM(vn, hn, params=params)
            hidden_batches = self.generate_input_for_layer(index, batches, seed=params.seed)
            layer_rbm.train(hidden_batches, progress=progress)
            self.layer_parameters.append(layer_rbm.weights)

            training_loss = self.calc_training_loss(batches)
            self.depthwise_training_loss.append(training_loss)
            logger.info("Finished training layer %d to %d (%s), training loss of DBN with %d layers: %s",
                        index, index+1, layer_rbm.stop_label, index+1, training_loss)
            logger.info("Time taken for training DBN layer %d to %d is %.2f seconds", index, index+1, time.time()-start_time)

        if (self.savefile is not None):
            self.save_model()
        return self

    def stack_layer(self, num_hidden: int, batches: Sequence[Matrix], steps: int = 100, learn_rate: float = None, min_error: float = None) -> float:
        """
        Push a fresh layer on top and train it with contrastive divergence
        through a trainer session, leaving the lower layers fixed.

        Stops early once the reconstruction error of the whole stack drops
        below ``min_error``. Returns the last measured error.
        """
        if (len(batches) == 0):
            raise ConfigurationError("stack_layer needs at least one batch")
        if (len(self.layer_parameters) == 0):
            vn = self.input_size
        else:
            vn = self.layer_parameters[-1].rows - 1
        seed = self.params.seed + len(self.layer_parameters)
        layer = new_rbm(SplitRandom(seed), vn + 1, num_hidden + 1)
        if (learn_rate is None):
            learn_rate = self.params.rate

        def script(session: trainer.Trainer):
            session.push_last_layer(layer)
            error = None
            for step in range(steps):
                batch = batches[step % len(batches)]
                session.contra_div(batch)
                if (min_error is not None and step % 10 == 9):
                    error = session.recon_err(batch)
                    if (error < min_error):
                        return session.finish(error)
            return session.recon_err(batches[0])

        error, dnn = trainer.run(self.layer_parameters, script, learn_rate=learn_rate)
        self.layer_parameters = dnn
        self.layers = [m.rows - 1 for m in dnn]
        return error

    def fine_tune(self, batches: Sequence[Matrix], targets: Sequence[Matrix], epochs: int = 10, learn_rate: float = None, min_error: float = None, progress: bool = False) -> float:
        """
        Back-propagation over the whole stack as a sigmoid network.

        ``targets`` are (batch x top hidden + 1) matrices matching the
        batches. Returns the last error.
        """
        if (len(self.layer_parameters) == 0):
            raise ConfigurationError("fine_tune: the DBN has no layers, train it first")
        if (len(batches) != len(targets)):
            raise ValueError("Got {} batches but {} targets".format(len(batches), len(targets)))
        if (learn_rate is None):
            learn_rate = self.fine_tune_rate

        def script(session: trainer.Trainer):
            error = None
            learning = trange(epochs, desc=str("Starting..."), disable=not progress)
            for epoch in learning:
                total = 0.
                for batch, target in zip(batches, targets):
                    total += session.back_prop(batch, target)
                error = total/len(batches)
                self.fine_tune_loss.append(error)
                details = {"epoch": epoch+1, "loss": round(error, 4)}
                learning.set_description(str(details))
                if (min_error is not None and error < min_error):
                    learning.close()
                    return session.finish(error)
            learning.close()
            return error

        error, dnn = trainer.run(self.layer_parameters, script, learn_rate=learn_rate)
        self.layer_parameters = dnn
        return error

    def calc_training_loss(self, batches: Sequence[Matrix], seed: int = 0) -> float:
        """
        Mean squared reconstruction error of the current stack
        """
        streams = SplitRandom(seed).splits()
        train_loss = 0.
        for batch in batches:
            reconstructed = mlp.reconstruct(batch, self.layer_parameters, next(streams))
            train_loss += (reconstructed.with_role(*batch.role) - batch).mse()
        return train_loss/len(batches)

    def reconstruct(self, batches: Sequence[Matrix], seed: int = 0) -> List[Matrix]:
        streams = SplitRandom(seed).splits()
        return [mlp.reconstruct(batch, self.layer_parameters, next(streams)) for batch in batches]

    def encode(self, batches: Sequence[Matrix]) -> List[Matrix]:
        """
        Top level hidden probabilities of every batch
        """
        return [mlp.feed_forward(self.layer_parameters, batch) for batch in batches]

    def save_model(self, savefile: str = None):
        """
        Save model
        """
        if (savefile is None):
            savefile = self.savefile
        model = {"W": [layer.data for layer in self.layer_parameters], "input_size": self.input_size, "layers": list(self.layers)}
        torch.save(model, savefile)

    def load_model(self, savefile: str):
        """
        Load DBN model
        """
        model = torch.load(savefile)
        layer_parameters = [Matrix(weights, ("H", "I")) for weights in model["W"]]
        mlp.check_layers(layer_parameters)
        self.input_size = model["input_size"]
        self.layers = model["layers"]
        self.layer_parameters = layer_parameters

    def visualize_training_curve(self, directory: str = "../results/plots/DBN/") -> str:
        """
        Visualize training curve
        """
        return plot_training_curve(self.depthwise_training_loss, "Training Loss for increasing depth of DBN", directory, xlabel="Depth", ylabel="Training Loss")
