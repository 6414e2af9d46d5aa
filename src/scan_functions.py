##############################################################
## Section 0: The required packages
##############################################################

import logging
import math
from dataclasses import dataclass
from enum import Enum

import numpy as np

# for code parallelisation and the progress bar
from joblib import Parallel, delayed
from tqdm import tqdm

from config_functions import ChaosMapConfig, check_positive_int
from pendulum_functions import flip_times_numba
from colour_functions import (
    FillCommand, PixelBuffer, flip_times_to_hsl, hsl_to_rgb, visualise_chaos_map,
)

logger = logging.getLogger(__name__)

##############################################################
## Section 1.1: Pixel -> initial condition
##############################################################

def pixel_to_initial_condition(x, y, width, height):
    '''
    Affine map of the surface onto [-pi, pi) x [-pi, pi): x -> theta1,
    y -> theta2, whatever the surface size.
    '''
    theta1 = (x / width) * 2 * math.pi - math.pi
    theta2 = (y / height) * 2 * math.pi - math.pi
    return theta1, theta2

def pixels_to_initial_conditions(xs, ys, width, height):
    """
    Vectorised pixel_to_initial_condition, same operations in the same order
    so that both give identical floats.
    """
    xs = np.asarray(xs, dtype=np.float64)
    ys = np.asarray(ys, dtype=np.float64)
    theta1s = (xs / width) * 2 * np.pi - np.pi
    theta2s = (ys / height) * 2 * np.pi - np.pi
    return theta1s, theta2s

##############################################################
## Section 1.2: Scan state, cursor and modes
##############################################################

class ScanState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class ScanStateError(RuntimeError):
    """The host drove a scan against its state machine."""


@dataclass
class ScanCursor:
    '''
    Position of a row-major scan over the sampled grid.
    0 <= pixel_index <= total_pixels at all times.
    '''

    width: int
    height: int
    resolution: int
    pixel_index: int = 0

    @property
    def cols(self):
        return math.ceil(self.width / self.resolution)

    @property
    def rows(self):
        return math.ceil(self.height / self.resolution)

    @property
    def total_pixels(self):
        return self.cols * self.rows

    @property
    def done(self):
        return self.pixel_index >= self.total_pixels

    def pixel_at(self, index):
        """
        Top-left corner (x, y) of the sample with linear index `index`. Works
        element-wise on an array of indexes too.
        """
        col = index % self.cols
        row = index // self.cols
        return col * self.resolution, row * self.resolution


@dataclass(frozen=True)
class ScanMode:
    resolution: int
    batch_size: int


# live preview: coarse stride, host repaints every ~1000 samples
PREVIEW_MODE = ScanMode(resolution=8, batch_size=1000)
# full resolution render, run to completion
BATCH_MODE = ScanMode(resolution=1, batch_size=50000)

# 16K surface used for batch renders
RENDER_16K_WIDTH = 15360
RENDER_16K_HEIGHT = 8640

##############################################################
## Section 1.3: One batch of results
##############################################################

@dataclass
class ScanBatch:
    """
    Results of one batch: top-left corners, flip times and their colours,
    in scan order, all painted as resolution x resolution squares.
    """

    start_index: int
    xs: np.ndarray
    ys: np.ndarray
    times: np.ndarray
    hue: np.ndarray
    saturation: np.ndarray
    lightness: np.ndarray
    resolution: int

    def __len__(self):
        return self.times.size

    def fill_commands(self):
        for k in range(self.times.size):
            yield FillCommand(
                x=int(self.xs[k]),
                y=int(self.ys[k]),
                width_px=self.resolution,
                height_px=self.resolution,
                hue=float(self.hue[k]),
                saturation=float(self.saturation[k]),
                lightness=float(self.lightness[k]),
            )

    def rgb(self):
        return hsl_to_rgb(self.hue, self.saturation, self.lightness)

##############################################################
## Section 1.4: The resumable grid scan
##############################################################

def _check_surface(width, height, resolution):
    check_positive_int("width", width)
    check_positive_int("height", height)
    check_positive_int("resolution", resolution)


class GridScan:
    '''
    Incremental chaos-map scan: Idle -> Scanning -> (Complete | Cancelled).

    Each call to run_batch() classifies at most batch_size samples from the
    cursor onwards, in row-major order, and returns them as a ScanBatch. The
    host decides when to call it (a frame callback, a loop, a task), so no
    call blocks for more than one batch. Cancellation is polled at the start
    of every batch and never interrupts a pixel.

    The scan is bound to one immutable ChaosMapConfig. reconfigure() with a
    different configuration, surface size or stride throws the partial
    results away and restarts from pixel 0.

    Row-major order only matters for progress reporting; every pixel is a
    pure function of its index, so n_jobs > 1 splits a batch over joblib
    threads and gives identical numbers.
    '''

    def __init__(self, width, height, config=None, resolution=PREVIEW_MODE.resolution,
                 batch_size=None, n_jobs=1, on_progress=None, on_state=None):
        _check_surface(width, height, resolution)
        if config is None:
            config = ChaosMapConfig()
        if batch_size is not None:
            check_positive_int("batch_size", batch_size)

        self.config = config
        self.cursor = ScanCursor(width=int(width), height=int(height), resolution=int(resolution))
        # an explicit batch_size wins over the one carried by the configuration
        self._batch_size_override = None if batch_size is None else int(batch_size)
        self.n_jobs = n_jobs
        self.on_progress = on_progress
        self.on_state = on_state

        self.state = ScanState.IDLE
        self._cancel_requested = False
        # bumped on every reset so hosts can drop stale partial results
        self.generation = 0

    @property
    def batch_size(self):
        if self._batch_size_override is not None:
            return self._batch_size_override
        return self.config.batch_size

    @property
    def width(self):
        return self.cursor.width

    @property
    def height(self):
        return self.cursor.height

    @property
    def resolution(self):
        return self.cursor.resolution

    @property
    def pixel_index(self):
        return self.cursor.pixel_index

    @property
    def total_pixels(self):
        return self.cursor.total_pixels

    def _set_state(self, state):
        self.state = state
        logger.info("Scan %dx%d @ stride %d: %s (%d/%d)", self.width, self.height,
                    self.resolution, state.value, self.pixel_index, self.total_pixels)
        if self.on_state is not None:
            self.on_state(state)

    ##############################################################
    ## state transitions

    def start(self):
        if self.state == ScanState.SCANNING:
            return
        if self.state != ScanState.IDLE:
            raise ScanStateError(f"cannot start a {self.state.value} scan, reset it first")

        self._cancel_requested = False
        if self.cursor.done:
            # nothing to sample (cannot happen for a positive surface)
            self._set_state(ScanState.COMPLETE)
            return
        self._set_state(ScanState.SCANNING)

    def cancel(self):
        """
        Ask a running scan to stop. Takes effect at the next batch boundary.
        """
        if self.state == ScanState.SCANNING:
            self._cancel_requested = True

    def reset(self):
        '''
        Back to Idle with the cursor at 0. A running scan is cancelled first.
        '''
        if self.state == ScanState.SCANNING:
            self._set_state(ScanState.CANCELLED)
        self._cancel_requested = False
        self.cursor.pixel_index = 0
        self.generation += 1
        self.state = ScanState.IDLE

    def restart(self):
        self.reset()
        self.start()

    def reconfigure(self, config=None, width=None, height=None, resolution=None, batch_size=None):
        '''
        Swap in a new configuration snapshot, surface size, stride or batch
        size. Anything that changes the picture restarts the scan from pixel
        0 (if it was running) or leaves it reset in Idle. A configuration that
        only differs in batch_size is swapped in without a reset and applies
        from the next batch. Returns True if the scan was reset.
        '''
        new_config = self.config if config is None else config
        new_width = self.width if width is None else width
        new_height = self.height if height is None else height
        new_resolution = self.resolution if resolution is None else resolution
        _check_surface(new_width, new_height, new_resolution)

        if batch_size is not None:
            check_positive_int("batch_size", batch_size)
            self._batch_size_override = int(batch_size)

        # batch_size decides how the work is cut, not what is drawn
        changed = (new_config.replace(batch_size=self.config.batch_size) != self.config
                   or new_width != self.width
                   or new_height != self.height
                   or new_resolution != self.resolution)
        if not changed:
            self.config = new_config
            return False

        was_scanning = self.state == ScanState.SCANNING
        self.reset()
        self.config = new_config
        self.cursor = ScanCursor(width=int(new_width), height=int(new_height),
                                 resolution=int(new_resolution))
        if was_scanning:
            self.start()
        return True

    ##############################################################
    ## the work

    def _classify(self, theta1s, theta2s):
        config = self.config
        args = (float(config.dt), float(config.max_time),
                *(float(p) for p in config.params.as_tuple()))

        if self.n_jobs == 1 or theta1s.size < 2:
            return flip_times_numba(theta1s, theta2s, *args)

        n_chunks = min(theta1s.size, self.n_jobs if self.n_jobs > 0 else 64)
        chunks = np.array_split(np.arange(theta1s.size), n_chunks)
        results = Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(flip_times_numba)(
                np.ascontiguousarray(theta1s[idx]), np.ascontiguousarray(theta2s[idx]), *args
            )
            for idx in chunks
        )
        return np.concatenate(results)

    def run_batch(self):
        '''
        Classify the next batch of samples and advance the cursor. Returns the
        ScanBatch, or None if a pending cancellation stopped the scan instead.
        '''
        if self.state != ScanState.SCANNING:
            raise ScanStateError(f"cannot run a batch on a {self.state.value} scan")

        if self._cancel_requested:
            self._cancel_requested = False
            self._set_state(ScanState.CANCELLED)
            return None

        start = self.cursor.pixel_index
        stop = min(start + self.batch_size, self.cursor.total_pixels)
        indexes = np.arange(start, stop, dtype=np.int64)

        xs, ys = self.cursor.pixel_at(indexes)

        theta1s, theta2s = pixels_to_initial_conditions(xs, ys, self.width, self.height)
        times = self._classify(theta1s, theta2s)
        hue, saturation, lightness = flip_times_to_hsl(times, self.config.max_time)

        self.cursor.pixel_index = stop
        logger.debug("Batch %d-%d done (%d/%d)", start, stop, stop, self.total_pixels)
        if self.on_progress is not None:
            self.on_progress(self.pixel_index, self.total_pixels)

        if self.cursor.done:
            self._set_state(ScanState.COMPLETE)

        return ScanBatch(start_index=start, xs=xs, ys=ys, times=times,
                         hue=hue, saturation=saturation, lightness=lightness,
                         resolution=self.resolution)

    def batches(self):
        """
        Run one batch, hand it to the caller, repeat until the scan is
        Complete or Cancelled. Starts an Idle scan.
        """
        if self.state == ScanState.IDLE:
            self.start()

        while self.state == ScanState.SCANNING:
            batch = self.run_batch()
            if batch is None:
                return
            yield batch

##############################################################
## Section 2.1: Host drivers
##############################################################

def run_scan(scan, buffer=None, on_batch=None, verbose=True, desc="Chaos map"):
    '''
    Drive a GridScan to the end in the calling thread, painting every batch
    into `buffer` (a PixelBuffer, created to the scan's size if not given).
    on_batch(scan, batch) is called after each batch and may cancel or
    reconfigure the scan. Returns the buffer.
    '''
    if buffer is None:
        buffer = PixelBuffer(scan.width, scan.height)

    if scan.state == ScanState.IDLE:
        buffer.clear()

    generation = scan.generation
    progress = tqdm(total=scan.total_pixels, initial=scan.pixel_index,
                    desc=desc, unit="px", disable=not verbose)
    try:
        for batch in scan.batches():
            if scan.generation != generation:
                # restarted under a new configuration: start from a blank image
                generation = scan.generation
                if (buffer.width, buffer.height) != (scan.width, scan.height):
                    buffer = PixelBuffer(scan.width, scan.height)
                else:
                    buffer.clear()
                progress.reset(total=scan.total_pixels)

            buffer.paint(batch.xs, batch.ys, batch.resolution, batch.rgb())
            progress.update(len(batch))
            if on_batch is not None:
                on_batch(scan, batch)
    finally:
        progress.close()

    return buffer

def live_preview(width, height, config=None, n_jobs=1, verbose=True,
                 show=False, **kwargs):
    '''
    Low resolution chaos map: stride 8, a batch per ~1000 samples.
    '''
    if config is None:
        config = ChaosMapConfig()

    scan = GridScan(width, height, config=config,
                    resolution=PREVIEW_MODE.resolution,
                    n_jobs=n_jobs, **kwargs)
    buffer = run_scan(scan, verbose=verbose, desc="Live preview")

    if show:
        visualise_chaos_map(buffer, title='Live preview')

    return buffer

def render_chaos_map(width=RENDER_16K_WIDTH, height=RENDER_16K_HEIGHT, config=None,
                     n_jobs=-1, verbose=True, show=False, **kwargs):
    '''
    Full resolution chaos map (stride 1, 50,000 samples per batch), by default
    on a 16K surface. This takes a long time; n_jobs=-1 uses all cores.
    '''
    if config is None:
        config = ChaosMapConfig()

    scan = GridScan(width, height, config=config,
                    resolution=BATCH_MODE.resolution,
                    batch_size=BATCH_MODE.batch_size, n_jobs=n_jobs, **kwargs)
    buffer = run_scan(scan, verbose=verbose, desc="Full render")

    if scan.state != ScanState.COMPLETE:
        logger.warning("Render stopped at %d/%d pixels", scan.pixel_index, scan.total_pixels)
    elif show:
        visualise_chaos_map(buffer)

    return buffer
