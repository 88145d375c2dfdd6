"""Tests for the spectral diagnostics of generated masks.

Run with:
    pytest tests/test_noise_spectrum.py -v
"""

from __future__ import annotations

import numpy as np
import pytest

from void_cluster import BlueNoiseConfigError, VoidClusterGenerator
from noise_spectrum import (
    layer_spectra,
    low_frequency_ratio,
    noise_histogram,
    radial_power,
    slice_spectra_x,
    slice_spectra_y,
    write_histogram,
)


@pytest.fixture
def generator() -> VoidClusterGenerator:
    return VoidClusterGenerator().create(64, 64, layers=4)


@pytest.fixture
def stack() -> np.ndarray:
    rng = np.random.default_rng(0)
    return rng.random((4, 64, 64)).astype(np.float32)


def permutation_layer(width: int, height: int, seed: int = 0) -> np.ndarray:
    num_pixels = width * height
    ranks = np.random.default_rng(seed).permutation(num_pixels)
    return (ranks / (num_pixels - 1)).astype(np.float32).reshape(height, width)


def test_layer_spectra_shape(generator, stack):
    spectra = layer_spectra(generator, stack)
    assert spectra.shape == (4, 64, 64)
    np.testing.assert_allclose(spectra[2], generator.dispatch_forward(stack[2]))


def test_slice_spectra_shapes(generator, stack):
    assert slice_spectra_x(generator, stack).shape == (64, 4, 64)
    assert slice_spectra_y(generator, stack).shape == (64, 64, 4)


def test_slice_spectra_x_transforms_rows_across_layers(generator, stack):
    spectra = slice_spectra_x(generator, stack)
    expected = np.abs(np.fft.fftshift(np.fft.fft2(stack[:, 7, :].astype(np.float64))))
    np.testing.assert_allclose(spectra[7], expected, rtol=1e-4, atol=1e-3)


def test_slice_spectra_need_power_of_two_layers(generator, stack):
    with pytest.raises(BlueNoiseConfigError):
        slice_spectra_x(generator, stack[:3])
    with pytest.raises(BlueNoiseConfigError):
        slice_spectra_y(generator, stack[:3])


def test_float_histogram_of_rank_mask_is_flat():
    histogram = noise_histogram(permutation_layer(32, 32))
    assert len(histogram) == 1024
    assert np.all(histogram == 1)


def test_float_histogram_counts_every_layer():
    stack = np.stack([permutation_layer(16, 16, seed) for seed in range(3)])
    assert np.all(noise_histogram(stack) == 3)


def test_integer_histogram_has_one_bin_per_level():
    values = np.array([[0, 0, 255], [7, 7, 7]], dtype=np.uint8)
    histogram = noise_histogram(values)
    assert len(histogram) == 256
    assert histogram[0] == 2 and histogram[7] == 3 and histogram[255] == 1
    assert len(noise_histogram(values.astype(np.uint16))) == 65536


def test_write_histogram_wraps_lines(tmp_path):
    path = tmp_path / "hist.txt"
    write_histogram(path, np.arange(130))
    lines = path.read_text().splitlines()
    assert len(lines) == 3
    assert len(lines[0].split()) == 64
    assert lines[2].split() == ["128", "129"]


def test_radial_power_covers_rings_to_nyquist():
    freqs, power = radial_power(np.random.default_rng(1).random((64, 64)))
    assert len(freqs) == len(power) == 31
    assert freqs[0] == pytest.approx(1 / 64)
    assert freqs[-1] == pytest.approx(31 / 64)


def test_low_frequency_ratio_separates_smooth_and_rough_images():
    y, x = np.mgrid[:64, :64]
    smooth = np.sin(2 * np.pi * x / 64) + np.cos(2 * np.pi * y / 32)
    rough = np.cos(2 * np.pi * 20 * x / 64) + np.cos(2 * np.pi * 24 * y / 64)
    rough += 0.01 * np.random.default_rng(2).random((64, 64))
    assert low_frequency_ratio(smooth) > 10.0
    assert low_frequency_ratio(rough) < 0.1
