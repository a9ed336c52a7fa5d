import numpy as np
import matplotlib.pyplot as plt

from FeatureLearner import CompetitiveFeatureLearner


class AllocationFailure(MemoryError):
    """A buffer could not be allocated while building the network."""

    CODES = {"activation": 1, "feature": 2, "outputs": 3, "threshold": 4}

    def __init__(self, site, layer=None):
        self.site = site
        self.code = self.CODES[site]
        self.layer = layer
        where = f" (layer {layer})" if layer is not None else ""
        super().__init__(f"failed to allocate {site} buffer{where}")


class ScratchAllocationFailure(MemoryError):
    """The per-feature score buffer used during training could not be allocated."""


def _trunc_div(a, b):
    # integer division rounding toward zero
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def patch_indices(img_width, img_height, feature_width, layer_width):
    """
    Source pixel index for every (output cell, feature pixel) pair.

    Returns an int array of shape (layer_width**2, feature_width**2). Row
    y*layer_width + x lists, in feature row-major order, the pixel indices
    (ty*img_width + tx) that the feature is compared against for that cell.
    """
    cells = np.arange(layer_width)
    top = cells * img_height // layer_width
    bottom = (cells + 1) * img_height // layer_width
    left = cells * img_width // layer_width
    right = (cells + 1) * img_width // layer_width

    k = np.arange(feature_width)
    ys = top[:, None] + k[None, :] * (bottom - top)[:, None] // feature_width
    xs = left[:, None] + k[None, :] * (right - left)[:, None] // feature_width

    # (layer_y, layer_x, yy, xx)
    idx = ys[:, None, :, None] * img_width + xs[None, :, None, :]
    return idx.reshape(layer_width * layer_width, feature_width * feature_width)


def convolve_image(img, img_width, img_height, img_depth,
                   feature_width, no_of_features, feature,
                   layer, layer_width):
    """
    Score every feature against every cell of a layer_width x layer_width grid.

    img holds img_width*img_height*img_depth values, feature holds
    no_of_features templates of feature_width*feature_width*img_depth values
    and layer receives layer_width*layer_width*no_of_features scores, written
    in place. Each score is 1 - mean squared difference, so an exact match
    gives 1.0.
    """
    idx = patch_indices(img_width, img_height, feature_width, layer_width)
    pixels = img.reshape(img_width * img_height, img_depth)
    patches = pixels[idx].reshape(idx.shape[0], -1)
    templates = feature.reshape(no_of_features, -1)

    diff = patches[:, None, :] - templates[None, :, :]
    match = np.sum(diff * diff, axis=2, dtype=np.float32)
    feature_pixels = np.float32(1.0 / (feature_width * feature_width * img_depth))
    layer[:] = (np.float32(1.0) - match * feature_pixels).reshape(-1)
    return layer


class Layer:
    def __init__(self, width, height, depth, no_of_features, feature_width):
        self.width = width
        self.height = height
        self.depth = depth
        self.no_of_features = no_of_features
        self.feature_width = feature_width
        self.layer = None
        self.feature = None

    def activation_index(self, x, y, d=0):
        return (y * self.width + x) * self.depth + d

    def feature_index(self, f, x, y, d=0):
        return ((f * self.feature_width + y) * self.feature_width + x) * self.depth + d

    def activation_grid(self):
        """View of the activation buffer as (height, width, depth)."""
        return self.layer.reshape(self.height, self.width, self.depth)

    def feature_grid(self):
        """View of the feature buffer as (no_of_features, fw, fw, depth)."""
        fw = self.feature_width
        return self.feature.reshape(self.no_of_features, fw, fw, self.depth)

    def __repr__(self):
        return (f"Layer(width={self.width}, height={self.height}, depth={self.depth}, "
                f"no_of_features={self.no_of_features}, feature_width={self.feature_width})")


class ConvolutionNetwork_Numpy:
    def __init__(self,
        no_of_layers,
        image_width,
        image_height,
        image_depth,
        no_of_features,
        feature_width,
        final_image_width,
        final_image_height,
        match_threshold,
        learning_rate=0.1,
        learner=None,
        random_seed=None,
        history_size=1024,
        history_step=1
    ):
        """
        Pyramid of shrinking convolution layers trained one layer at a time.

        Layer widths are interpolated from the image width down to
        final_image_width; every layer after the first is square. Each layer
        holds no_of_features templates whose width scales with the layer
        (never below 3). Training of a layer stops once the summed matching
        error of a train() call drops below its match_threshold entry.
        """
        if no_of_layers < 1:
            raise ValueError(f"no_of_layers must be >= 1, got {no_of_layers}")
        for name, v in (("image_width", image_width), ("image_height", image_height),
                        ("image_depth", image_depth), ("no_of_features", no_of_features),
                        ("feature_width", feature_width),
                        ("final_image_width", final_image_width),
                        ("final_image_height", final_image_height)):
            if v < 1:
                raise ValueError(f"{name} must be >= 1, got {v}")
        if len(match_threshold) != no_of_layers:
            raise ValueError(f"expected {no_of_layers} match thresholds, got {len(match_threshold)}")
        if history_size < 2 or history_size % 2:
            raise ValueError(f"history_size must be an even number >= 2, got {history_size}")

        self.no_of_layers  = no_of_layers
        self.current_layer = 0
        self.learning_rate = learning_rate
        self.learner       = learner if learner is not None else CompetitiveFeatureLearner()
        self.rng           = np.random.default_rng(random_seed)

        self.iterations       = 0
        self.training_counter = 0
        self._history_ctr     = 0
        self.last_mean_score  = 0.0

        self.history      = []
        self.history_size = history_size
        self.history_step = history_step

        self.image_width        = image_width
        self.image_height       = image_height
        self.feature_width      = feature_width
        self.final_image_width  = final_image_width
        self.final_image_height = final_image_height

        self.layers = []
        self.outputs = None
        self.match_threshold = None

        for l in range(no_of_layers):
            width = image_width - _trunc_div((image_width - final_image_width) * l, no_of_layers)
            if l == 0:
                height = image_height - _trunc_div((image_height - final_image_height) * l, no_of_layers)
                depth = image_depth
            else:
                height = width
                depth = self.layers[l-1].no_of_features
            fw = max(3, _trunc_div(feature_width * width, image_width))
            self.layers.append(Layer(width, height, depth, no_of_features, fw))

        for l, lyr in enumerate(self.layers):
            try:
                lyr.layer = np.zeros(lyr.width * lyr.height * lyr.depth, dtype=np.float32)
            except MemoryError as e:
                raise AllocationFailure("activation", l) from e
            try:
                lyr.feature = self.rng.random(
                    lyr.no_of_features * lyr.feature_width * lyr.feature_width * lyr.depth,
                    dtype=np.float32)
            except MemoryError as e:
                raise AllocationFailure("feature", l) from e

        self.outputs_width = final_image_width
        # one score per feature of the last layer, which is also the depth of
        # the last layer whenever there is more than one layer
        self.no_of_outputs = final_image_width * final_image_width * self.layers[-1].no_of_features
        try:
            self.outputs = np.zeros(self.no_of_outputs, dtype=np.float32)
        except MemoryError as e:
            raise AllocationFailure("outputs") from e
        try:
            self.match_threshold = np.array(match_threshold, dtype=np.float64)
        except MemoryError as e:
            raise AllocationFailure("threshold") from e

    def free(self):
        """Release every buffer. The network is unusable afterwards."""
        for lyr in self.layers:
            lyr.layer = None
            lyr.feature = None
        self.outputs = None
        self.match_threshold = None

    @property
    def complete(self):
        return self.current_layer >= self.no_of_layers

    # ------------------ forward -------------------------
    def feed_forward(self, image, layer):
        """
        Load image into layer 0 and convolve through the first `layer` layers.

        image is a uint8 sequence of width*height*depth samples for layer 0.
        Layer l writes into layer l+1, the last layer writes into outputs.
        """
        if not 0 <= layer <= self.no_of_layers:
            raise ValueError(f"layer must be in [0, {self.no_of_layers}], got {layer}")
        first = self.layers[0]
        img = np.asarray(image, dtype=np.uint8).reshape(-1)
        if img.size != first.layer.size:
            raise ValueError(f"expected {first.layer.size} image samples, got {img.size}")

        first.layer[:] = img.astype(np.float32) / np.float32(255.0)

        for l in range(layer):
            src = self.layers[l]
            if l < self.no_of_layers - 1:
                next_layer = self.layers[l+1].layer
                next_width = self.layers[l+1].width
            else:
                next_layer = self.outputs
                next_width = self.outputs_width
            convolve_image(src.layer, src.width, src.height, src.depth,
                           src.feature_width, src.no_of_features, src.feature,
                           next_layer, next_width)

    def predict(self, image):
        self.feed_forward(image, self.no_of_layers)
        return self.outputs.reshape(self.outputs_width, self.outputs_width, -1).copy()

    # ------------------ training ------------------------
    def train(self, image, samples, random_state=None):
        """
        Run `samples` learning passes on the current layer.

        Returns the summed error of the passes, or 0.0 once every layer has
        been trained. When the sum is below the layer's match threshold
        training moves on to the next layer.

        random_state is a numpy Generator owned by the caller and advanced in
        place, so consecutive calls draw different samples. None uses the
        network's own generator.
        """
        if self.complete:
            return 0.0
        if samples < 1:
            raise ValueError(f"samples must be >= 1, got {samples}")

        if random_state is None:
            rng = self.rng
        elif isinstance(random_state, np.random.Generator):
            rng = random_state
        else:
            raise TypeError(f"random_state must be a numpy Generator or None, "
                            f"got {type(random_state).__name__}")

        l = self.current_layer
        self.feed_forward(image, l)
        lyr = self.layers[l]

        try:
            feature_score = np.zeros(lyr.no_of_features, dtype=np.float32)
        except MemoryError as e:
            raise ScratchAllocationFailure(
                f"failed to allocate feature scores for layer {l}") from e

        matching_score = 0.0
        for _ in range(samples):
            matching_score += self.learner.learn(
                lyr.layer, lyr.width, lyr.height, lyr.depth,
                lyr.feature_width, lyr.no_of_features, lyr.feature,
                feature_score, samples, self.learning_rate, rng)
            self.iterations += 1
        del feature_score

        self.last_mean_score = matching_score / samples
        self.update_history(matching_score)

        if matching_score < float(self.match_threshold[l]):
            self.current_layer += 1

        return float(matching_score)

    def Train(self, image_loader, samples=10, epochs=10, print_every=1, random_state=None):
        """
        Feed every image of the loader to train() until all layers are trained.

        image_loader is any re-iterable of images. Returns a history dict with
        the score and the trained layer of every train() call.
        """
        history = {"score": [], "layer": []}
        if random_state is not None and not isinstance(random_state, np.random.Generator):
            random_state = np.random.default_rng(random_state)

        for epoch in range(1, epochs+1):
            total = 0.0
            n = 0
            for image in image_loader:
                if self.complete:
                    break
                l = self.current_layer
                score = self.train(image, samples, random_state)
                history["score"].append(score)
                history["layer"].append(l)
                total += score
                n += 1
                if print_every and self.current_layer != l:
                    print(f"Layer {l} trained after {self.iterations} iterations | score {score:.4f}")

            if print_every and epoch % print_every == 0 and n:
                print(f"Epoch {epoch:02d} | layer {self.current_layer}/{self.no_of_layers} "
                      f"| mean score {total / n:.4f}")
            if self.complete:
                break
        return history

    # ------------------ history -------------------------
    def update_history(self, score):
        self.training_counter += 1
        self._history_ctr += 1
        if self._history_ctr < self.history_step:
            return
        self._history_ctr = 0
        self.history.append(float(score))
        if len(self.history) >= self.history_size:
            h = np.asarray(self.history, dtype=np.float64)
            self.history = list((h[0::2] + h[1::2]) / 2.0)
            self.history_step *= 2

    def plot_history(self, filename, title="Training Error", img_width=640, img_height=480):
        if not self.history:
            raise ValueError("no training history to plot")
        dpi = 100
        steps = np.arange(len(self.history)) * self.history_step
        max_value = max(0.01, max(self.history))

        fig, ax = plt.subplots(figsize=(img_width / dpi, img_height / dpi), dpi=dpi)
        try:
            ax.plot(steps, self.history)
            ax.set_title(title)
            ax.set_xlabel("Time Step")
            ax.set_ylabel("Training Error")
            ax.set_xlim(0, len(self.history) * self.history_step)
            ax.set_ylim(0, max_value * 1.02)
            ax.grid(True)
            fig.savefig(filename, dpi=dpi)
        finally:
            plt.close(fig)

    # ------------------ persistence ---------------------
    def save(self, stream):
        """Write geometry, training state and feature templates to a binary stream."""
        arrays = {
            "geometry": np.array([self.no_of_layers, self.image_width, self.image_height,
                                  self.layers[0].depth, self.layers[0].no_of_features,
                                  self.feature_width, self.final_image_width,
                                  self.final_image_height], dtype=np.int64),
            "state": np.array([self.current_layer, self.iterations, self.training_counter,
                               self.history_size, self.history_step, self._history_ctr], dtype=np.int64),
            "learning_rate": np.array(self.learning_rate, dtype=np.float64),
            "match_threshold": self.match_threshold,
            "history": np.asarray(self.history, dtype=np.float64),
        }
        for l, lyr in enumerate(self.layers):
            arrays[f"feature{l}"] = lyr.feature
        np.savez(stream, **arrays)

    @classmethod
    def load(cls, stream, learner=None, random_seed=None):
        with np.load(stream) as data:
            try:
                geometry = [int(v) for v in data["geometry"]]
                state = [int(v) for v in data["state"]]
                history_ctr = state[5]
                learning_rate = float(data["learning_rate"])
                match_threshold = data["match_threshold"].tolist()
                history = data["history"].tolist()
                net = cls(*geometry, match_threshold,
                          learning_rate=learning_rate, learner=learner,
                          random_seed=random_seed, history_size=state[3],
                          history_step=state[4])
                for l, lyr in enumerate(net.layers):
                    feature = data[f"feature{l}"]
                    if feature.shape != lyr.feature.shape:
                        raise ValueError(f"layer {l} features have shape {feature.shape}, "
                                         f"expected {lyr.feature.shape}")
                    lyr.feature[:] = feature
            except (KeyError, IndexError, TypeError) as e:
                raise ValueError(f"not a saved convolution network: {e}") from e

        net.current_layer, net.iterations, net.training_counter = state[:3]
        net._history_ctr = history_ctr
        net.history = history
        return net
