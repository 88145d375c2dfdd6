#!/usr/bin/env python3
"""
Generate void-and-cluster blue noise dither arrays.

Either seeds from an input image (pixels brighter than 50% are "on") or
synthesizes a random seed with --init percent coverage. Output formats are
chosen by extension:

    .png          8/16-bit grayscale, one file per layer (name_l0.png, ...)
    .npy          stacked (layers, height, width) array at the chosen bit depth
    .safetensors  float32 tensor "noise" with the generation parameters

Usage:
    python tools/generate_void_cluster_noise.py -o blue_noise_128.png
    python tools/generate_void_cluster_noise.py -s 256 -l 4 -r 42 -o noise.safetensors --forward spectrum.png
    python tools/generate_void_cluster_noise.py -i seed.png -b 16 -o noise16.png --histogram hist.txt
"""

import sys
import time
from datetime import timedelta
from pathlib import Path

import numpy as np
from PIL import Image
from safetensors.numpy import save_file
import argparse

from void_cluster import (
    BlueNoiseConfigError,
    BlueNoiseResourceError,
    GenerationCancelled,
    VoidClusterGenerator,
    is_pot,
    make_seed_image,
    quantize_noise,
)
from noise_spectrum import (
    layer_spectra,
    noise_histogram,
    slice_spectra_x,
    slice_spectra_y,
    write_histogram,
)


class ProgressPrinter:
    """Single-line progress with elapsed and remaining time, at most every `interval` seconds."""

    def __init__(self, interval: float = 0.1, stream=None):
        self.interval = interval
        self.stream = stream if stream is not None else sys.stdout
        self.begin = time.monotonic()
        self.last = float('-inf')

    def __call__(self, done: int, total: int):
        now = time.monotonic()
        if now - self.last < self.interval and done < total:
            return
        self.last = now
        fraction = min(done / max(total, 1), 1.0)
        elapsed = now - self.begin
        remain = elapsed * (1.0 - fraction) / max(fraction, 1e-4)
        self.stream.write(f"\rProgress: {fraction * 100:5.1f} % "
                          f"Time: {timedelta(seconds=int(elapsed))} "
                          f"Remain: {timedelta(seconds=int(remain))}    ")
        self.stream.flush()

    def finish(self):
        self.stream.write("\n")
        self.stream.flush()


def load_seed_image(path: Path) -> np.ndarray:
    """Load image as grayscale float array in [0, 1]."""
    img = Image.open(path).convert('L')
    return np.array(img, dtype=np.float32) / 255.0


def layer_paths(path: Path, layers: int) -> list[Path]:
    if layers == 1:
        return [path]
    return [path.with_stem(f"{path.stem}_l{layer}") for layer in range(layers)]


def save_noise(path: Path, noise: np.ndarray, bits: int, metadata: dict[str, str] | None = None):
    """Write a (layers, height, width) noise stack in the format given by the extension."""
    suffix = path.suffix.lower()
    if suffix == '.safetensors':
        save_file({'noise': np.ascontiguousarray(noise, dtype=np.float32)}, str(path), metadata=metadata)
        return [path]

    data = quantize_noise(noise, bits)
    if suffix == '.npy':
        np.save(path, data)
        return [path]
    if suffix == '.png':
        if bits == 32:
            raise BlueNoiseConfigError("32-bit output needs .npy or .safetensors")
        paths = layer_paths(path, len(data))
        for layer, layer_path in zip(data, paths):
            Image.fromarray(layer).save(layer_path)
        return paths
    raise BlueNoiseConfigError(f"unsupported output format {path.suffix!r}")


def save_spectrum(path: Path, spectra: np.ndarray):
    """Write a stack of magnitude spectra. PNG output is log-scaled per slice."""
    suffix = path.suffix.lower()
    if suffix == '.safetensors':
        save_file({'spectrum': np.ascontiguousarray(spectra, dtype=np.float32)}, str(path))
        return [path]
    if suffix == '.npy':
        np.save(path, spectra.astype(np.float32))
        return [path]
    if suffix == '.png':
        paths = layer_paths(path, len(spectra))
        for spectrum, layer_path in zip(spectra, paths):
            scaled = np.log1p(spectrum.astype(np.float64))
            scaled /= max(scaled.max(), 1e-12)
            Image.fromarray((scaled * 255.0 + 0.5).astype(np.uint8)).save(layer_path)
        return paths
    raise BlueNoiseConfigError(f"unsupported spectrum format {path.suffix!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Generate void-and-cluster blue noise dither arrays'
    )
    parser.add_argument('-i', '--input', type=Path,
                        help='Seed image (pixels > 50%% are on); sets the size')
    parser.add_argument('-o', '--output', type=Path,
                        help='Output image (.png, .npy or .safetensors)')
    parser.add_argument('--forward', type=Path,
                        help='Forward spectrum of every layer')
    parser.add_argument('--forward-x', type=Path,
                        help='Spectra of horizontal slices across layers')
    parser.add_argument('--forward-y', type=Path,
                        help='Spectra of vertical slices across layers')
    parser.add_argument('--histogram', type=Path,
                        help='Histogram output (text)')
    parser.add_argument('-b', '--bits', type=int, default=8, choices=[8, 16, 32],
                        help='Image bits (default: 8)')
    parser.add_argument('-s', '--size', type=int, default=None,
                        help='Image size, sets width and height (default: 128)')
    parser.add_argument('-w', '--width', type=int, default=128,
                        help='Image width (default: 128)')
    parser.add_argument('--height', type=int, default=128,
                        help='Image height (default: 128)')
    parser.add_argument('-l', '--layers', type=int, default=1,
                        help='Image layers (default: 1)')
    parser.add_argument('-r', '--seed', type=int, default=None,
                        help='Random seed (default: time based)')
    parser.add_argument('-p', '--init', type=int, default=10,
                        help='Initial pixels in percent (default: 10)')
    parser.add_argument('--sigma', type=float, default=2.0,
                        help='Gaussian sigma (default: 2.0)')
    parser.add_argument('-e', '--epsilon', type=float, default=0.01,
                        help='Quadratic epsilon (default: 0.01)')
    parser.add_argument('--no-retighten', action='store_true',
                        help='Tighten only the first layer seed')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='No progress output')
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    width, height = args.width, args.height
    if args.size is not None:
        width = height = args.size

    try:
        input_image = None
        if args.input is not None:
            if not args.input.exists():
                print(f"Error: Input image not found: {args.input}", file=sys.stderr)
                return 1
            input_image = load_seed_image(args.input)
            height, width = input_image.shape

        if not is_pot(width) or not is_pot(height):
            raise BlueNoiseConfigError(f"invalid image size {width}x{height}")

        generator = VoidClusterGenerator().create(width, height, args.layers)

        if input_image is None:
            seed = args.seed if args.seed is not None else int(time.time()) & 0xFFFFFFFF
            input_image = make_seed_image(width, height, args.init, seed)
            print(f"Size: {width}x{height} Layers: {args.layers} Bits: {args.bits} "
                  f"Sigma: {args.sigma:g} Epsilon: {args.epsilon:g} Init: {args.init}% Seed: {seed}")
        else:
            seed = None
            print(f"Size: {width}x{height} Layers: {args.layers} Bits: {args.bits} "
                  f"Sigma: {args.sigma:g} Epsilon: {args.epsilon:g}")

        progress = None if args.quiet else ProgressPrinter()
        noise = generator.dispatch(input_image, args.layers, args.sigma, args.epsilon,
                                   tighten_layers=not args.no_retighten, progress=progress)
        if progress is not None:
            progress.finish()

        if args.output is not None:
            metadata = {'sigma': f"{args.sigma:g}", 'epsilon': f"{args.epsilon:g}",
                        'layers': str(args.layers)}
            if seed is not None:
                metadata['seed'] = str(seed)
            for path in save_noise(args.output, noise, args.bits, metadata):
                print(f"Saved: {path}")

        # diagnostics run on the noise as it was written
        written = quantize_noise(noise, args.bits)
        normalized = noise if args.bits == 32 else written.astype(np.float32) / np.iinfo(written.dtype).max

        if args.forward is not None:
            for path in save_spectrum(args.forward, layer_spectra(generator, normalized)):
                print(f"Saved: {path}")

        if args.forward_x is not None and args.layers > 1:
            for path in save_spectrum(args.forward_x, slice_spectra_x(generator, normalized)):
                print(f"Saved: {path}")

        if args.forward_y is not None and args.layers > 1:
            for path in save_spectrum(args.forward_y, slice_spectra_y(generator, normalized)):
                print(f"Saved: {path}")

        if args.histogram is not None:
            write_histogram(args.histogram, noise_histogram(written))
            print(f"Saved: {args.histogram}")

    except (BlueNoiseConfigError, BlueNoiseResourceError, GenerationCancelled) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
