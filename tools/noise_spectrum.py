#!/usr/bin/env python3
"""
Spectral diagnostics for generated blue noise masks.

- Per-layer forward spectra (magnitude, DC at the center)
- X/Y slice spectra across layers: how well consecutive layers decorrelate
- Value histograms (a rank mask has a flat histogram)
- Radially averaged power, the usual 1D summary of a 2D noise spectrum

None of this touches generation state.
"""

import numpy as np
from pathlib import Path

from void_cluster import BlueNoiseConfigError, VoidClusterGenerator, is_pot


def layer_spectra(generator: VoidClusterGenerator, noise: np.ndarray) -> np.ndarray:
    """Forward spectrum of every layer, shape (layers, height, width)."""
    return np.stack([generator.dispatch_forward(layer) for layer in noise])


def slice_spectra_x(generator: VoidClusterGenerator, noise: np.ndarray) -> np.ndarray:
    """
    Spectra of horizontal slices through the layer stack.

    For every row y the slice image is noise[:, y, :] (layers x width).
    Returns shape (height, layers, width).
    """
    layers, height, width = noise.shape
    if not is_pot(layers):
        raise BlueNoiseConfigError(f"slice spectra need a power-of-two layer count, got {layers}")
    return np.stack([generator.dispatch_forward(noise[:, y, :]) for y in range(height)])


def slice_spectra_y(generator: VoidClusterGenerator, noise: np.ndarray) -> np.ndarray:
    """
    Spectra of vertical slices through the layer stack.

    For every column x the slice image is noise[:, :, x].T (height x layers).
    Returns shape (width, height, layers).
    """
    layers, height, width = noise.shape
    if not is_pot(layers):
        raise BlueNoiseConfigError(f"slice spectra need a power-of-two layer count, got {layers}")
    return np.stack([generator.dispatch_forward(noise[:, :, x].T) for x in range(width)])


def noise_histogram(values: np.ndarray) -> np.ndarray:
    """
    Histogram with one bin per representable level.

    Integer images get 2**bits bins. Float images get one bin per pixel of a
    layer, so a correct rank mask puts exactly `layers` hits in every bin.
    """
    if values.ndim == 2:
        values = values[None]
    if np.issubdtype(values.dtype, np.integer):
        bins = np.iinfo(values.dtype).max + 1
        return np.bincount(values.ravel().astype(np.int64), minlength=bins)
    bins = values.shape[1] * values.shape[2]
    index = ((bins - 1) * values.ravel().astype(np.float64) + 0.5).astype(np.int64)
    return np.bincount(np.clip(index, 0, bins - 1), minlength=bins)


def write_histogram(path: Path, histogram: np.ndarray, per_line: int = 64):
    """Whitespace separated counts, `per_line` values per line."""
    lines = []
    for start in range(0, len(histogram), per_line):
        lines.append(' '.join(str(int(v)) for v in histogram[start:start + per_line]))
    path.write_text('\n'.join(lines) + '\n')


def radial_power(image: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Radially averaged power spectrum of a mean-removed image.

    Returns (frequencies, power); frequencies in cycles/pixel for rings of
    radius 1 .. min(h, w) / 2 - 1.
    """
    h, w = image.shape
    centered = image - image.mean()
    spectrum = np.abs(np.fft.fftshift(np.fft.fft2(centered))) ** 2

    cy, cx = h // 2, w // 2
    max_radius = min(cx, cy)
    y_coords, x_coords = np.ogrid[:h, :w]
    distances = np.sqrt((x_coords - cx) ** 2 + (y_coords - cy) ** 2)

    power = []
    for r in range(1, max_radius):
        ring = np.abs(distances - r) < 0.5
        power.append(spectrum[ring].mean() if ring.any() else 0.0)

    freqs = np.arange(1, max_radius) / min(h, w)
    return freqs, np.array(power)


def low_frequency_ratio(image: np.ndarray, low: int = 3) -> float:
    """Mean power of the `low` innermost rings relative to the outer half."""
    _, power = radial_power(image)
    outer = power[len(power) // 2:]
    return float(power[:low].mean() / max(outer.mean(), 1e-12))
