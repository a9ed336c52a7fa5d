import numpy as np


class FeatureLearner:
    """
    Update rule for the feature templates of one convolution layer.

    The layer trainer calls learn() once per sampling pass. Implementations
    mutate `feature` in place and return an error contribution for the pass
    (lower is better).
    """

    def learn(self, layer, width, height, depth,
              feature_width, no_of_features, feature,
              feature_score, samples, learning_rate, rng):
        raise NotImplementedError


class CompetitiveFeatureLearner(FeatureLearner):
    """
    Winner-take-all learning (online k-means over image patches).

    For every sampled patch the closest feature is pulled toward it by
    `learning_rate`. The returned error is the mean, over the samples, of the
    winning feature's mean squared difference.
    """

    def __init__(self, min_samples=1):
        if min_samples < 1:
            raise ValueError(f"min_samples must be >= 1, got {min_samples}")
        self.min_samples = min_samples

    # ------------------ sampling ------------------------
    def sample_patch(self, layer, width, height, depth, feature_width, rng):
        grid = layer.reshape(height, width, depth)
        tx = int(rng.integers(0, max(width - feature_width, 0) + 1))
        ty = int(rng.integers(0, max(height - feature_width, 0) + 1))
        # layers narrower than the feature repeat their edge pixels
        xs = np.minimum(tx + np.arange(feature_width), width - 1)
        ys = np.minimum(ty + np.arange(feature_width), height - 1)
        return grid[np.ix_(ys, xs)].reshape(-1)

    # ------------------ update --------------------------
    def learn(self, layer, width, height, depth,
              feature_width, no_of_features, feature,
              feature_score, samples, learning_rate, rng):
        patch_size = feature_width * feature_width * depth
        templates = feature.reshape(no_of_features, patch_size)

        n = max(int(samples), self.min_samples)
        total = 0.0
        for _ in range(n):
            patch = self.sample_patch(layer, width, height, depth, feature_width, rng)
            diff = templates - patch[None, :]
            feature_score[:] = np.mean(diff * diff, axis=1)
            best = int(np.argmin(feature_score))
            total += float(feature_score[best])
            templates[best] -= learning_rate * diff[best]
        return total / n
