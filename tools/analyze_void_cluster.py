#!/usr/bin/env python3
"""
Fourier analysis of generated void-and-cluster masks.

For every layer of a mask, plots:
- The mask itself
- Thresholded patterns at a few densities (each should look evenly spread)
- The forward magnitude spectrum (dark center = suppressed low frequencies)
- Radially averaged power of the mask and of white noise at the same size

Usage:
    python tools/analyze_void_cluster.py -i blue_noise_128.png
    python tools/analyze_void_cluster.py -i noise.npy -o analysis.png --levels 0.1 0.5
"""

import numpy as np
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from pathlib import Path
from PIL import Image
import argparse

from void_cluster import VoidClusterGenerator, threshold_layer
from noise_spectrum import radial_power, low_frequency_ratio


def load_noise(path: Path) -> np.ndarray:
    """Load a mask as a float (layers, height, width) stack in [0, 1]."""
    if path.suffix.lower() == '.npy':
        data = np.load(path)
    else:
        data = np.array(Image.open(path))
        if data.ndim == 3:
            data = data[..., 0]
    if np.issubdtype(data.dtype, np.integer):
        data = data.astype(np.float32) / np.iinfo(data.dtype).max
    data = data.astype(np.float32)
    if data.ndim == 2:
        data = data[None]
    return data


def plot_layer_analysis(layer: np.ndarray, generator: VoidClusterGenerator, levels: list[float],
                        title: str, output_path: Path, seed: int = 42):
    """Mask, thresholded patterns, spectrum and radial power in one figure."""
    n_cols = 3 + len(levels)
    fig, axes = plt.subplots(1, n_cols, figsize=(4 * n_cols, 4.5))

    axes[0].imshow(layer, cmap='gray', vmin=0, vmax=1)
    axes[0].set_title('Mask')
    axes[0].axis('off')

    for col, level in enumerate(levels, start=1):
        pattern = threshold_layer(layer, level)
        axes[col].imshow(pattern, cmap='gray', vmin=0, vmax=1)
        axes[col].set_title(f'Threshold {level:.0%} ({int(pattern.sum())} px)')
        axes[col].axis('off')

    spectrum = generator.dispatch_forward(layer - layer.mean())
    axes[-2].imshow(np.log1p(spectrum), cmap='gray')
    axes[-2].set_title('Frequency Spectrum')
    axes[-2].axis('off')

    rng = np.random.default_rng(seed=seed)
    white = rng.random(layer.shape).astype(np.float32)
    freqs, power = radial_power(layer)
    _, white_power = radial_power(white)

    axes[-1].plot(freqs, 10 * np.log10(power + 1e-10), 'b-', label='Void-and-cluster', alpha=0.8)
    axes[-1].plot(freqs, 10 * np.log10(white_power + 1e-10), 'k--', label='White noise', alpha=0.5)
    axes[-1].set_xlabel('Spatial Frequency (cycles/pixel)')
    axes[-1].set_ylabel('Power (dB)')
    axes[-1].set_title(f'Radial Power (low/high {low_frequency_ratio(layer):.3f})')
    axes[-1].set_xlim(0, 0.5)
    axes[-1].legend(loc='lower right')
    axes[-1].grid(True, alpha=0.3)

    fig.suptitle(title, fontsize=14, fontweight='bold')
    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close()


def analyze(input_path: Path, output_path: Path, levels: list[float]) -> list[Path]:
    noise = load_noise(input_path)
    layers, height, width = noise.shape
    generator = VoidClusterGenerator().create(width, height)

    paths = []
    for index, layer in enumerate(noise):
        if layers == 1:
            path = output_path
        else:
            path = output_path.with_stem(f"{output_path.stem}_l{index}")
        plot_layer_analysis(layer, generator, levels, f"{input_path.stem} layer {index}", path)
        print(f"  {path.name}")
        paths.append(path)
    return paths


def main():
    parser = argparse.ArgumentParser(description='Analyze void-and-cluster masks with Fourier methods')
    parser.add_argument('--input', '-i', type=Path, required=True, help='Mask image (.png or .npy)')
    parser.add_argument('--output', '-o', type=Path, help='Output path for the analysis figure')
    parser.add_argument('--levels', type=float, nargs='+', default=[0.1, 0.5],
                        help='Threshold densities to show (default: 0.1 0.5)')
    args = parser.parse_args()

    if not args.input.exists():
        print(f"Error: Mask not found: {args.input}")
        return

    output_path = args.output or args.input.with_name(f"{args.input.stem}_analysis.png")
    print(f"Analyzing {args.input}...")
    analyze(args.input, output_path, args.levels)
    print("\nDone!")


if __name__ == "__main__":
    main()
