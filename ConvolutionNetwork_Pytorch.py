# ConvolutionNetwork_Pytorch.py
import numpy as np
import torch
from torch import nn

from ConvolutionNetwork_Numpy import patch_indices


class ConvolutionNetwork_Pytorch(nn.Module):
    def __init__(self, network, device=None):
        """
        Batched feed-forward through a ConvolutionNetwork_Numpy pyramid.

        The features are copied at construction, so later training of the
        NumPy network is not seen here. Scores match the NumPy propagator up
        to float32 rounding.
        """
        super().__init__()
        self.no_of_layers  = network.no_of_layers
        self.outputs_width = network.outputs_width
        self.geometry = []

        for l, lyr in enumerate(network.layers):
            if l < network.no_of_layers - 1:
                next_width = network.layers[l+1].width
            else:
                next_width = network.outputs_width
            idx = patch_indices(lyr.width, lyr.height, lyr.feature_width, next_width)
            self.register_buffer(f"index{l}", torch.as_tensor(idx, dtype=torch.long))
            self.register_buffer(
                f"feature{l}",
                torch.as_tensor(np.array(lyr.feature), dtype=torch.float32)
                     .reshape(lyr.no_of_features, -1))
            self.geometry.append((lyr.width, lyr.height, lyr.depth, lyr.no_of_features, next_width))

        self.device = device or torch.device("cuda" if torch.cuda.is_available() else "cpu")
        self.to(self.device)

    # ---------- patch convolver ----------
    def convolve(self, x, l):
        # x: [B, H*W, D] -> [B, next_width**2 * no_of_features]
        idx = getattr(self, f"index{l}")
        feature = getattr(self, f"feature{l}")
        B = x.shape[0]
        patches = x[:, idx].reshape(B, idx.shape[0], -1)        # [B, cells, P]
        diff = patches.unsqueeze(2) - feature[None, None]       # [B, cells, F, P]
        match = (diff * diff).sum(dim=3)
        return (1.0 - match / patches.shape[2]).reshape(B, -1)

    # ---------- forward ----------
    def forward(self, images, layer=None):
        if layer is None:
            layer = self.no_of_layers
        if not 0 <= layer <= self.no_of_layers:
            raise ValueError(f"layer must be in [0, {self.no_of_layers}], got {layer}")

        width, height, depth = self.geometry[0][:3]
        x = images.reshape(images.shape[0], -1)
        if x.shape[1] != width * height * depth:
            raise ValueError(f"expected {width * height * depth} samples per image, got {x.shape[1]}")
        x = x.to(self.device, torch.float32) / 255.0

        for l in range(layer):
            width, height, depth = self.geometry[l][:3]
            x = self.convolve(x.reshape(x.shape[0], width * height, depth), l)

        if layer == self.no_of_layers:
            return x.reshape(x.shape[0], self.outputs_width, self.outputs_width, -1)
        return x

    @torch.no_grad()
    def predict(self, x):
        """
        Feed-forward a numpy array or tensor of uint8 images, single or batched.
        """
        self.eval()
        if not torch.is_tensor(x):
            x = torch.as_tensor(np.asarray(x, dtype=np.uint8))

        width, height, depth = self.geometry[0][:3]
        if x.numel() == width * height * depth:
            x = x.reshape(1, -1)

        return self(x).cpu()
