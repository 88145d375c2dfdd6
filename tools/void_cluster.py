#!/usr/bin/env python3
"""
Void-and-cluster blue noise mask generation (Ulichney 1993).

A binary seed pattern is turned into a dither array of dense per-pixel ranks.
Each greedy step recomputes the low-pass "energy" of the current pattern
exactly with the convolution theorem (forward transform, multiply by the
kernel spectrum, inverse transform), then picks the single tightest cluster
or largest void with a two-stage tiled reduction:

    Phase 0  tighten      cluster -> off, void -> on      (P swap pairs)
    Phase 1  rank-down    cluster -> off, rank P-1 .. 0
    Phase 2  rank-up      void -> on,     rank P .. N/2-1
    Phase 3  complement   cluster -> off on the inverted pattern, rank N/2 .. N-1

Several layers can be chained: layer l+1 is seeded with the top-ranked
pixels of layer l, as many as the first seed had. This decorrelates
consecutive layers while each keeps its blue noise spectrum.

The transform always runs at a power-of-two working size of at least
MIN_SIZE. Smaller or non-power-of-two requests are tiled into that size with
a centered wrap-around offset, and searched only inside the centered window.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

import numpy as np
from numpy.fft import fftshift, irfft2, rfft2


MIN_SIZE = 64            # smallest transform dimension
BATCH_SIZE = 512         # greedy steps between progress reports
SAMPLE_GROUP_SIZE = 16   # tile edge of the local reduction stage


ProgressCallback = Callable[[int, int], None]
CancelCallback = Callable[[], bool]


class BlueNoiseConfigError(ValueError):
    """Invalid generation request. Raised before any buffer is allocated."""


class BlueNoiseResourceError(RuntimeError):
    """A transform, kernel or working buffer could not be created."""


class GenerationCancelled(RuntimeError):
    """Generation was abandoned at a layer checkpoint."""


def npot(value: int) -> int:
    """Smallest power of two that is >= value."""
    return 1 << max(int(value) - 1, 0).bit_length()


def is_pot(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


def padded_size(width: int, height: int) -> tuple[int, int]:
    """Power-of-two working size used by the transform for a logical size."""
    return max(npot(width), MIN_SIZE), max(npot(height), MIN_SIZE)


@dataclass
class VoidClusterParams:
    """Shape parameters of one generation run."""
    sigma: float = 2.0
    epsilon: float = 0.01
    layers: int = 1
    tighten_layers: bool = True   # rerun phase 0 on every chained layer

    def validate(self):
        if self.layers < 1:
            raise BlueNoiseConfigError(f"invalid layer count {self.layers}")
        if not self.sigma > 0.0:
            raise BlueNoiseConfigError(f"sigma must be positive, got {self.sigma}")
        if self.epsilon < 0.0:
            raise BlueNoiseConfigError(f"epsilon must not be negative, got {self.epsilon}")


# =============================================================================
# Transform and energy model
# =============================================================================

class FourierTransform:
    """Real-to-complex 2D transform over a fixed power-of-two size."""

    def __init__(self, width: int, height: int):
        if not is_pot(width) or not is_pot(height):
            raise BlueNoiseResourceError(f"can't create FourierTransform for {width}x{height}")
        self.width = width
        self.height = height

    @property
    def spectrum_shape(self) -> tuple[int, int]:
        return self.height, self.width // 2 + 1

    def forward(self, image: np.ndarray) -> np.ndarray:
        if image.shape != (self.height, self.width):
            raise BlueNoiseResourceError(
                f"can't dispatch forward transform: {image.shape[1]}x{image.shape[0]} "
                f"image on a {self.width}x{self.height} transform")
        return rfft2(image)

    def backward(self, spectrum: np.ndarray) -> np.ndarray:
        if spectrum.shape != self.spectrum_shape:
            raise BlueNoiseResourceError("can't dispatch backward transform: spectrum shape mismatch")
        return irfft2(spectrum, s=(self.height, self.width))


def build_energy_kernel(width: int, height: int, sigma: float, epsilon: float) -> np.ndarray:
    """
    Radially symmetric energy kernel on the torus.

    k(d) = exp(-d / sigma^2) + epsilon / (1 + d), with d the squared wrapped
    distance to the origin. The Gaussian core does the void-and-cluster work,
    the inverse-quadratic tail keeps distant pixels weakly coupled.

    Each distinct quadrant offset is evaluated once and written to all four
    mirrored positions (x and width - x share the same horizontal offset).
    Terms are float32, the normalizing sum is accumulated in float64, and
    the kernel is rescaled so that it sums to `width`.
    """
    if width < MIN_SIZE or height < MIN_SIZE or not is_pot(width) or not is_pot(height):
        raise BlueNoiseResourceError(f"can't create energy kernel for {width}x{height}")

    isigma = np.float32(1.0 / (sigma * sigma + 1e-6))
    dx = np.arange(width // 2 + 1, dtype=np.float32)
    dy = np.arange(height // 2 + 1, dtype=np.float32)
    d = dy[:, None] ** 2 + dx[None, :] ** 2
    quadrant = np.exp(-d * isigma) + np.float32(epsilon) / (np.float32(1.0) + d)

    xs = np.arange(width)
    ys = np.arange(height)
    kernel = quadrant[np.minimum(ys, height - ys)][:, np.minimum(xs, width - xs)]

    weight = kernel.sum(dtype=np.float64)
    return kernel.astype(np.float64) * (width / weight)


class SpectralFilter:
    """Energy kernel kept in the frequency domain. Read-only once built."""

    def __init__(self, transform: FourierTransform, sigma: float, epsilon: float):
        self.sigma = sigma
        self.epsilon = epsilon
        self.kernel = build_energy_kernel(transform.width, transform.height, sigma, epsilon)
        self.spectrum = transform.forward(self.kernel)
        self.kernel.setflags(write=False)
        self.spectrum.setflags(write=False)


class Resizer:
    """
    Maps a logical image onto the padded working size.

    Padded index p reads logical index (p - offset) mod logical, with
    offset = (padded - logical) // 2. The logical pattern is tiled around a
    centered window, and that window maps one-to-one back to logical pixels.
    """

    def __init__(self, width: int, height: int, padded_width: int, padded_height: int):
        if width > padded_width or height > padded_height:
            raise BlueNoiseResourceError(
                f"can't fit {width}x{height} into a {padded_width}x{padded_height} working size")
        self.width = width
        self.height = height
        self.padded_width = padded_width
        self.padded_height = padded_height
        self.offset_x = (padded_width - width) // 2
        self.offset_y = (padded_height - height) // 2
        self.identity = (width, height) == (padded_width, padded_height)
        self._rows = (np.arange(padded_height) - self.offset_y) % height
        self._cols = (np.arange(padded_width) - self.offset_x) % width

    def lift(self, pattern: np.ndarray, out: np.ndarray) -> np.ndarray:
        if self.identity:
            np.copyto(out, pattern)
        else:
            np.take(pattern[self._rows], self._cols, axis=1, out=out)
        return out

    def window(self, field: np.ndarray) -> np.ndarray:
        """Logical-sized view of a padded field."""
        return field[self.offset_y:self.offset_y + self.height,
                     self.offset_x:self.offset_x + self.width]

    def to_padded(self, x: int, y: int) -> tuple[int, int]:
        return x + self.offset_x, y + self.offset_y

    def to_logical(self, x: int, y: int) -> tuple[int, int]:
        return (x - self.offset_x) % self.width, (y - self.offset_y) % self.height


class EnergyField:
    """Low-pass filtered density of a pattern, recomputed in place every step."""

    def __init__(self, transform: FourierTransform, spectral_filter: SpectralFilter, resizer: Resizer):
        self.transform = transform
        self.filter = spectral_filter
        self.resizer = resizer
        self.lifted = np.zeros((transform.height, transform.width), dtype=np.float64)
        self.energy = np.zeros((transform.height, transform.width), dtype=np.float64)

    def compute(self, pattern: np.ndarray) -> np.ndarray:
        """Energy of `pattern` over the logical window."""
        self.resizer.lift(pattern, self.lifted)
        spectrum = self.transform.forward(self.lifted)
        # r = r0 * r1 - i0 * i1, i = i0 * r1 + r0 * i1
        spectrum *= self.filter.spectrum
        self.energy[...] = self.transform.backward(spectrum)
        return self.resizer.window(self.energy)


# =============================================================================
# Extremal search
# =============================================================================

class Extremum(ABC):
    """Search policy: which pixels are eligible and how they are weighted.

    The search always takes the maximum weight; ineligible pixels weigh -inf.
    """

    name = ''
    value = 0.0   # state written to the winning pixel

    @abstractmethod
    def weigh(self, pattern: np.ndarray, energy: np.ndarray, out: np.ndarray):
        ...


class ClusterSearch(Extremum):
    """Tightest cluster: the on pixel with the highest energy. Turns it off."""

    name = 'cluster'
    value = 0.0

    def weigh(self, pattern, energy, out):
        out.fill(-np.inf)
        np.copyto(out, energy, where=pattern > 0.5)


class VoidSearch(Extremum):
    """Largest void: the off pixel with the lowest energy. Turns it on."""

    name = 'void'
    value = 1.0

    def weigh(self, pattern, energy, out):
        out.fill(-np.inf)
        np.negative(energy, out=out, where=pattern < 0.5)


CLUSTER = ClusterSearch()
VOID = VoidSearch()


class ExtremalSearch:
    """
    Two-stage arg-max over a logical-sized weight image.

    Stage one reduces every SAMPLE_GROUP_SIZE square tile to one candidate
    (first maximum in tile row-major order). Stage two reduces the candidate
    buffer; equal weights resolve to the lowest row-major pixel index.
    """

    def __init__(self, width: int, height: int, group_size: int = SAMPLE_GROUP_SIZE):
        self.width = width
        self.height = height
        self.group_size = group_size
        self.tiles_x = -(-width // group_size)
        self.tiles_y = -(-height // group_size)
        num_tiles = self.tiles_x * self.tiles_y

        # padding outside the logical region stays -inf
        self.weights = np.full((self.tiles_y * group_size, self.tiles_x * group_size),
                               -np.inf, dtype=np.float64)
        self.candidate_positions = np.zeros(num_tiles, dtype=np.int64)
        self.candidate_weights = np.full(num_tiles, -np.inf, dtype=np.float64)

        tile = np.arange(num_tiles)
        self._tile_index = tile
        self._tile_y = (tile // self.tiles_x) * group_size
        self._tile_x = (tile % self.tiles_x) * group_size

    def find(self, extremum: Extremum, pattern: np.ndarray, energy: np.ndarray) -> int:
        """Flat logical index of the winning pixel."""
        extremum.weigh(pattern, energy, self.weights[:self.height, :self.width])
        self._reduce_tiles()
        return self._reduce_candidates(extremum)

    def _reduce_tiles(self):
        g = self.group_size
        tiles = (self.weights
                 .reshape(self.tiles_y, g, self.tiles_x, g)
                 .transpose(0, 2, 1, 3)
                 .reshape(-1, g * g))
        local = tiles.argmax(axis=1)
        self.candidate_weights[:] = tiles[self._tile_index, local]
        y = self._tile_y + local // g
        x = self._tile_x + local % g
        self.candidate_positions[:] = y * self.width + x

    def _reduce_candidates(self, extremum: Extremum) -> int:
        best = self.candidate_weights.max()
        if best == -np.inf:
            raise RuntimeError(f"{extremum.name} search found no eligible pixel")
        return int(self.candidate_positions[self.candidate_weights == best].min())


# =============================================================================
# Generation run and phases
# =============================================================================

class GenerationRun:
    """
    Working buffers of one generation call.

    Owned exclusively by that call and reused in place by every phase:
    the layer pattern, a scratch pattern, the energy field, the tile
    candidate buffer, and the rank sequence (sequence[rank] = flat index,
    -1 while unassigned).
    """

    def __init__(self, transform: FourierTransform, spectral_filter: SpectralFilter,
                 width: int, height: int, progress: ProgressCallback | None = None):
        self.width = width
        self.height = height
        self.num_pixels = width * height
        self.resizer = Resizer(width, height, transform.width, transform.height)
        self.field = EnergyField(transform, spectral_filter, self.resizer)
        self.search = ExtremalSearch(width, height)
        self.pattern = np.zeros((height, width), dtype=np.float64)
        self.scratch = np.zeros((height, width), dtype=np.float64)
        self.sequence = np.full(self.num_pixels, -1, dtype=np.int64)
        self.progress = progress
        self.done = 0
        self.total = 0

    def step(self, pattern: np.ndarray, extremum: Extremum, rank: int = -1) -> int:
        """One greedy step: energy, search, flip, optional rank record."""
        energy = self.field.compute(pattern)
        index = self.search.find(extremum, pattern, energy)
        pattern.flat[index] = extremum.value
        if rank >= 0:
            self.sequence[rank] = index
        self.done += 1
        if self.progress is not None and self.done % BATCH_SIZE == 0:
            self.progress(self.done, self.total)
        return index


def seed_pattern(image: np.ndarray, out: np.ndarray) -> int:
    """Threshold an input image at 0.5 into `out`; returns the on-pixel count."""
    np.greater(image, 0.5, out=out, casting='unsafe')
    return int(np.count_nonzero(out))


def tighten(run: GenerationRun, pattern: np.ndarray, num_positions: int):
    """Phase 0: move the seed towards an even distribution. No ranks."""
    for _ in range(num_positions):
        run.step(pattern, CLUSTER)
        run.step(pattern, VOID)


def rank_down(run: GenerationRun, pattern: np.ndarray, num_positions: int):
    """Phase 1: remove clusters one by one, ranks num_positions-1 down to 0."""
    for i in range(num_positions):
        run.step(pattern, CLUSTER, num_positions - i - 1)


def rank_up(run: GenerationRun, pattern: np.ndarray, begin: int, end: int):
    """Phase 2: fill voids one by one, ranks begin .. end-1."""
    for i in range(begin, end):
        run.step(pattern, VOID, i)


def rank_up_complement(run: GenerationRun, pattern: np.ndarray, begin: int, end: int):
    """Phase 3: remove clusters of the inverted pattern, ranks begin .. end-1."""
    for i in range(begin, end):
        run.step(pattern, CLUSTER, i)


def render_layer(sequence: np.ndarray, width: int, height: int) -> np.ndarray:
    """Scatter rank / (N - 1) to every recorded position."""
    num_pixels = width * height
    noise = np.empty(num_pixels, dtype=np.float32)
    noise[sequence] = np.arange(num_pixels, dtype=np.float64) / max(num_pixels - 1, 1)
    return noise.reshape(height, width)


def threshold_layer(noise: np.ndarray, fraction: float, out: np.ndarray | None = None) -> np.ndarray:
    """Binary pattern of the pixels with a value below `fraction`."""
    if out is None:
        out = np.zeros(noise.shape, dtype=np.float64)
    np.less(noise, fraction, out=out, casting='unsafe')
    return out


def chain_pattern(noise: np.ndarray, fraction: float, out: np.ndarray | None = None) -> np.ndarray:
    """
    Seed of the next layer: the pixels ranked in the top `fraction`.

    The lowest ranks of a layer are exactly its tightened seed, so that
    level set would regenerate the same layer. Compared in rank space,
    float32 values stop resolving neighbouring ranks on large masks.
    """
    num_pixels = noise.size
    ranks = np.rint(noise.astype(np.float64) * (num_pixels - 1))
    count = int(round(fraction * num_pixels))
    if out is None:
        out = np.zeros(noise.shape, dtype=np.float64)
    np.greater_equal(ranks, num_pixels - count, out=out, casting='unsafe')
    return out


def generate_layer(run: GenerationRun, num_positions: int) -> np.ndarray:
    """Phases 1-3 on the (tightened) run pattern; returns the rendered layer."""
    half_pixels = run.num_pixels // 2
    run.sequence.fill(-1)

    np.copyto(run.scratch, run.pattern)
    rank_down(run, run.scratch, num_positions)

    rank_up(run, run.pattern, num_positions, half_pixels)

    np.subtract(1.0, run.pattern, out=run.scratch)
    rank_up_complement(run, run.scratch, max(num_positions, half_pixels), run.num_pixels)

    return render_layer(run.sequence, run.width, run.height)


def make_seed_image(width: int, height: int, init: int = 10, seed: int | None = None) -> np.ndarray:
    """
    Random binary seed image.

    Draws `height * init // 100` rows' worth of random pixel hits. Hits may
    collide, so the on-fraction ends up slightly below `init` percent.
    """
    if width < 1 or height < 1:
        raise BlueNoiseConfigError(f"invalid image size {width}x{height}")
    rng = np.random.default_rng(seed)
    hits = height * init // 100 * width
    image = np.zeros((height, width), dtype=np.float32)
    image[rng.integers(0, height, hits), rng.integers(0, width, hits)] = 1.0
    return image


def quantize_noise(noise: np.ndarray, bits: int) -> np.ndarray:
    """Normalized noise as uint8 / uint16, or float32 for 32 bits."""
    if bits == 8:
        return np.round(noise * 255.0).astype(np.uint8)
    if bits == 16:
        return np.round(noise * 65535.0).astype(np.uint16)
    if bits == 32:
        return noise.astype(np.float32)
    raise BlueNoiseConfigError(f"invalid image bits {bits}")


def magnitude_spectrum(transform: FourierTransform, image: np.ndarray) -> np.ndarray:
    """
    Forward transform magnitude, recentered so DC sits at (h/2, w/2).

    The right half is rebuilt from the half spectrum through Hermitian
    symmetry: F[y, x] = conj(F[-y, -x]).
    """
    half = np.abs(transform.forward(np.asarray(image, dtype=np.float64)))
    height, width = transform.height, transform.width
    full = np.empty((height, width), dtype=np.float64)
    full[:, :width // 2 + 1] = half
    if width > 2:
        xs = np.arange(width // 2 + 1, width)
        ys = (-np.arange(height)) % height
        full[:, width // 2 + 1:] = half[ys][:, width - xs]
    return fftshift(full).astype(np.float32)


# =============================================================================
# Generator
# =============================================================================

class VoidClusterGenerator:
    """
    Blue noise generator.

    `create` fixes the largest working size; `dispatch` runs the full phase
    sequence for every layer; `dispatch_forward` is the read-only spectrum
    diagnostic. Transforms are created once per size and reused.
    """

    def __init__(self):
        self.max_width = 0
        self.max_height = 0
        self._transforms: dict[tuple[int, int], FourierTransform] = {}

    def create(self, width: int, height: int, layers: int = 1) -> 'VoidClusterGenerator':
        if width < 1 or height < 1 or layers < 1:
            raise BlueNoiseConfigError(f"invalid image size {width}x{height} l{layers}")
        width, height = padded_size(width, height)
        layers = npot(layers)
        # layer slices are transformed too
        self.max_width = max(width, layers)
        self.max_height = max(height, layers)
        self._transforms = {}
        self.transform(width, height)
        return self

    def transform(self, width: int, height: int) -> FourierTransform:
        if width > self.max_width or height > self.max_height:
            raise BlueNoiseResourceError(
                f"can't create FourierTransform for {width}x{height}, generator was created "
                f"for {self.max_width}x{self.max_height}")
        key = (width, height)
        if key not in self._transforms:
            self._transforms[key] = FourierTransform(width, height)
        return self._transforms[key]

    def begin_run(self, width: int, height: int, sigma: float, epsilon: float,
                  progress: ProgressCallback | None = None) -> GenerationRun:
        transform = self.transform(*padded_size(width, height))
        spectral_filter = SpectralFilter(transform, sigma, epsilon)
        return GenerationRun(transform, spectral_filter, width, height, progress)

    def dispatch(self, image: np.ndarray, layers: int = 1, sigma: float = 2.0, epsilon: float = 0.01,
                 tighten_layers: bool = True, progress: ProgressCallback | None = None,
                 cancel: CancelCallback | None = None) -> np.ndarray:
        """
        Generate `layers` blue noise layers seeded by `image`.

        Args:
            image: 2D array; pixels above 0.5 form the seed pattern
            layers: Number of chained layers
            sigma: Gaussian spread of the energy kernel
            epsilon: Weight of the inverse-quadratic kernel tail
            tighten_layers: Rerun phase 0 on every chained layer
            progress: Called as progress(done_steps, total_steps)
            cancel: Polled before every layer; True abandons the run

        Returns:
            float32 array (layers, height, width) of rank / (N - 1)
        """
        image = np.asarray(image)
        if image.ndim != 2:
            raise BlueNoiseConfigError(f"seed image must be 2D, got shape {image.shape}")
        height, width = image.shape
        if width < 1 or height < 1:
            raise BlueNoiseConfigError(f"invalid image size {width}x{height} l{layers}")
        params = VoidClusterParams(sigma=sigma, epsilon=epsilon, layers=layers,
                                   tighten_layers=tighten_layers)
        params.validate()

        run = self.begin_run(width, height, params.sigma, params.epsilon, progress)
        num_positions = seed_pattern(image, run.pattern)
        num_pixels = run.num_pixels
        fraction = num_positions / num_pixels
        tighten_passes = layers if tighten_layers else 1
        run.total = num_positions * 2 * tighten_passes + num_pixels * layers

        noise = np.empty((layers, height, width), dtype=np.float32)
        for layer in range(layers):
            if cancel is not None and cancel():
                raise GenerationCancelled(f"generation cancelled before layer {layer}")

            if layer == 0 or tighten_layers:
                tighten(run, run.pattern, num_positions)
            noise[layer] = generate_layer(run, num_positions)

            if layer + 1 < layers:
                chain_pattern(noise[layer], fraction, out=run.pattern)
                num_positions = int(np.count_nonzero(run.pattern))

        if progress is not None:
            progress(run.total, run.total)
        return noise

    def dispatch_forward(self, image: np.ndarray) -> np.ndarray:
        """Recentered magnitude spectrum of a power-of-two image."""
        image = np.asarray(image)
        if image.ndim != 2:
            raise BlueNoiseConfigError(f"forward image must be 2D, got shape {image.shape}")
        height, width = image.shape
        if not is_pot(width) or not is_pot(height):
            raise BlueNoiseConfigError(f"invalid image size {width}x{height}")
        return magnitude_spectrum(self.transform(width, height), image)
