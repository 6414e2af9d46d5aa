import math

import numpy as np
import pytest

from config_functions import ChaosMapConfig, ConfigStore, InvalidConfigurationError
from colour_functions import FillCommand, PixelBuffer
from pendulum_functions import time_to_flip
from scan_functions import (
    BATCH_MODE, PREVIEW_MODE, GridScan, ScanCursor, ScanState, ScanStateError,
    live_preview, pixel_to_initial_condition, pixels_to_initial_conditions,
    render_chaos_map, run_scan,
)


# --- 1. Pixel -> initial condition ---


def test_left_and_top_edges_map_to_minus_pi():
    assert pixel_to_initial_condition(0, 0, 800, 600) == (-math.pi, -math.pi)


def test_far_edges_map_to_pi():
    theta1, theta2 = pixel_to_initial_condition(800, 600, 800, 600)
    assert theta1 == pytest.approx(math.pi)
    assert theta2 == pytest.approx(math.pi)


def test_centre_maps_to_zero():
    assert pixel_to_initial_condition(400, 300, 800, 600) == (0.0, 0.0)


@pytest.mark.parametrize("width", [7, 800, 15360])
def test_mapping_is_affine_and_increasing(width):
    xs = np.arange(width)
    theta1s, _ = pixels_to_initial_conditions(xs, np.zeros(width), width, 10)

    steps = np.diff(theta1s)
    assert np.all(steps > 0)
    np.testing.assert_allclose(steps, 2 * np.pi / width, rtol=1e-9)
    assert theta1s[0] == -np.pi
    assert theta1s[-1] < np.pi


def test_vectorised_mapping_matches_scalar():
    xs = np.array([0, 3, 17, 799])
    ys = np.array([0, 5, 333, 599])
    theta1s, theta2s = pixels_to_initial_conditions(xs, ys, 800, 600)

    for k in range(xs.size):
        assert (theta1s[k], theta2s[k]) == pixel_to_initial_condition(int(xs[k]), int(ys[k]), 800, 600)


# --- 2. Cursor ---


def test_cursor_counts():
    cursor = ScanCursor(width=800, height=600, resolution=8)
    assert cursor.cols == 100
    assert cursor.rows == 75
    assert cursor.total_pixels == 7500


def test_cursor_rounds_partial_cells_up():
    cursor = ScanCursor(width=801, height=601, resolution=8)
    assert cursor.total_pixels == 101 * 76


def test_cursor_pixel_at_is_row_major():
    cursor = ScanCursor(width=800, height=600, resolution=8)
    assert cursor.pixel_at(0) == (0, 0)
    assert cursor.pixel_at(1) == (8, 0)
    assert cursor.pixel_at(100) == (0, 8)
    assert cursor.pixel_at(7499) == (792, 592)


def test_cursor_pixel_at_takes_index_arrays():
    cursor = ScanCursor(width=800, height=600, resolution=8)
    xs, ys = cursor.pixel_at(np.array([0, 1, 100, 7499]))
    assert xs.tolist() == [0, 8, 0, 792]
    assert ys.tolist() == [0, 0, 8, 592]


def test_modes():
    assert (PREVIEW_MODE.resolution, PREVIEW_MODE.batch_size) == (8, 1000)
    assert (BATCH_MODE.resolution, BATCH_MODE.batch_size) == (1, 50000)


# --- 3. The scan state machine ---


class TestGridScan:

    def test_full_preview_scan_enumerates_every_sample(self, quick_config):
        progress = []
        states = []
        scan = GridScan(800, 600, config=quick_config, resolution=8, batch_size=1000,
                        on_progress=lambda done, total: progress.append((done, total)),
                        on_state=states.append)

        batches = list(scan.batches())

        assert scan.state == ScanState.COMPLETE
        assert scan.pixel_index == 7500
        assert scan.total_pixels == 7500
        assert sum(len(b) for b in batches) == 7500
        assert len(batches) == 8
        assert [b.start_index for b in batches] == list(range(0, 7500, 1000))
        assert progress[-1] == (7500, 7500)
        assert all(done <= total for done, total in progress)
        assert [done for done, _ in progress] == sorted(done for done, _ in progress)
        assert states == [ScanState.SCANNING, ScanState.COMPLETE]

    def test_complete_is_terminal(self, quick_config):
        scan = GridScan(16, 16, config=quick_config, resolution=8)
        list(scan.batches())

        assert scan.state == ScanState.COMPLETE
        with pytest.raises(ScanStateError):
            scan.run_batch()
        with pytest.raises(ScanStateError):
            scan.start()
        assert list(scan.batches()) == []

    def test_run_batch_needs_a_started_scan(self, quick_config):
        scan = GridScan(16, 16, config=quick_config)
        with pytest.raises(ScanStateError):
            scan.run_batch()

    def test_batch_size_defaults_to_config(self):
        config = ChaosMapConfig(max_time=0.05, batch_size=7)
        scan = GridScan(80, 80, config=config)
        scan.start()
        assert len(scan.run_batch()) == 7

    def test_cancel_takes_effect_at_next_batch(self, quick_config):
        scan = GridScan(80, 60, config=quick_config, resolution=1, batch_size=100)
        scan.start()
        scan.run_batch()
        scan.cancel()

        assert scan.state == ScanState.SCANNING
        assert scan.run_batch() is None
        assert scan.state == ScanState.CANCELLED
        assert scan.pixel_index == 100

        with pytest.raises(ScanStateError):
            scan.start()

        scan.restart()
        assert scan.state == ScanState.SCANNING
        assert scan.pixel_index == 0
        assert scan.run_batch().start_index == 0

    def test_cancel_through_the_generator(self, quick_config):
        scan = GridScan(80, 60, config=quick_config, resolution=1, batch_size=100)
        seen = 0
        for batch in scan.batches():
            seen += len(batch)
            scan.cancel()

        assert seen == 100
        assert scan.state == ScanState.CANCELLED

    def test_reset_of_running_scan_reports_cancelled(self, quick_config):
        states = []
        scan = GridScan(80, 60, config=quick_config, resolution=1, batch_size=100,
                        on_state=states.append)
        scan.start()
        scan.run_batch()
        scan.reset()

        assert states == [ScanState.SCANNING, ScanState.CANCELLED]
        assert scan.state == ScanState.IDLE
        assert scan.pixel_index == 0

    def test_reconfigure_restarts_running_scan(self, quick_config):
        scan = GridScan(80, 60, config=quick_config, resolution=1, batch_size=100)
        scan.start()
        scan.run_batch()
        generation = scan.generation

        assert scan.reconfigure(config=quick_config.replace(g=3.7))
        assert scan.state == ScanState.SCANNING
        assert scan.pixel_index == 0
        assert scan.generation == generation + 1
        assert scan.config.g == 3.7

    def test_reconfigure_with_same_values_is_a_no_op(self, quick_config):
        scan = GridScan(80, 60, config=quick_config, resolution=1, batch_size=100)
        scan.start()
        scan.run_batch()

        assert not scan.reconfigure(config=ChaosMapConfig(max_time=0.05), width=80)
        assert scan.pixel_index == 100

    def test_reconfigure_idle_scan_stays_idle(self, quick_config):
        scan = GridScan(80, 60, config=quick_config)
        assert scan.reconfigure(resolution=4)
        assert scan.state == ScanState.IDLE
        assert scan.total_pixels == 20 * 15

    def test_reconfigure_resize(self, quick_config):
        scan = GridScan(80, 60, config=quick_config, resolution=8)
        scan.start()
        scan.reconfigure(width=160, height=120)
        assert scan.total_pixels == 20 * 15
        assert scan.pixel_index == 0

    def test_store_change_restarts_subscribed_scan(self, quick_config):
        store = ConfigStore(quick_config)
        scan = GridScan(80, 60, config=store.config, resolution=1, batch_size=100)
        store.subscribe(scan.reconfigure)
        scan.start()
        scan.run_batch()

        store.apply(m2=2.0)

        assert scan.pixel_index == 0
        assert scan.config == store.config
        assert scan.state == ScanState.SCANNING

    def test_store_batch_size_change_reaches_subscribed_scan(self):
        store = ConfigStore(ChaosMapConfig(max_time=0.05, batch_size=100))
        scan = GridScan(80, 60, config=store.config, resolution=1)
        store.subscribe(scan.reconfigure)
        scan.start()
        assert len(scan.run_batch()) == 100

        store.apply(chunkSize=10)

        assert scan.batch_size == 10
        assert scan.pixel_index == 100
        batch = scan.run_batch()
        assert len(batch) == 10
        assert batch.start_index == 100

    def test_explicit_batch_size_survives_config_change(self, quick_config):
        store = ConfigStore(quick_config)
        scan = GridScan(80, 60, config=store.config, resolution=1, batch_size=25)
        store.subscribe(scan.reconfigure)
        scan.start()

        store.apply(chunkSize=10, m2=2.0)

        assert scan.batch_size == 25
        assert len(scan.run_batch()) == 25

        scan.reconfigure(batch_size=40)
        assert len(scan.run_batch()) == 40

    def test_numpy_integers_are_accepted(self, quick_config):
        scan = GridScan(np.int64(80), np.int64(60), config=quick_config,
                        resolution=np.int64(4), batch_size=np.int64(5))
        scan.start()
        assert len(scan.run_batch()) == 5
        assert scan.total_pixels == 20 * 15

    @pytest.mark.parametrize("kwargs", [
        dict(width=0, height=10),
        dict(width=10, height=-1),
        dict(width=10, height=10, resolution=0),
        dict(width=10.5, height=10),
        dict(width=10, height=10, batch_size=0),
        dict(width=10, height=10, batch_size=True),
        dict(width=10, height=10, batch_size=5.0),
    ])
    def test_invalid_surface_is_rejected(self, kwargs):
        with pytest.raises(InvalidConfigurationError):
            GridScan(**kwargs)

    def test_invalid_reconfigure_leaves_scan_alone(self, quick_config):
        scan = GridScan(80, 60, config=quick_config)
        with pytest.raises(InvalidConfigurationError):
            scan.reconfigure(resolution=0)
        assert scan.resolution == PREVIEW_MODE.resolution


# --- 4. Results ---


def test_batch_results_match_the_classifier(default_config):
    scan = GridScan(40, 30, config=default_config, resolution=5, batch_size=10)
    scan.start()
    batch = scan.run_batch()

    for k in range(len(batch)):
        theta1, theta2 = pixel_to_initial_condition(int(batch.xs[k]), int(batch.ys[k]), 40, 30)
        assert batch.times[k] == time_to_flip(theta1, theta2, default_config)


def test_parallel_and_sequential_scans_agree(default_config):
    sequential = GridScan(40, 30, config=default_config, resolution=2, batch_size=120)
    parallel = GridScan(40, 30, config=default_config, resolution=2, batch_size=120, n_jobs=3)

    times_seq = np.concatenate([b.times for b in sequential.batches()])
    times_par = np.concatenate([b.times for b in parallel.batches()])

    assert np.array_equal(times_seq, times_par)


def test_results_stay_in_range(default_config):
    scan = GridScan(80, 60, config=default_config, resolution=8)
    times = np.concatenate([b.times for b in scan.batches()])

    assert np.all(times >= 0)
    assert np.all(times <= default_config.max_time)
    assert np.any(times == default_config.max_time)
    assert np.any(times < default_config.max_time)


def test_fill_commands(quick_config):
    scan = GridScan(32, 16, config=quick_config, resolution=8)
    scan.start()
    batch = scan.run_batch()
    commands = list(batch.fill_commands())

    assert len(commands) == 8
    assert commands[0] == FillCommand(x=0, y=0, width_px=8, height_px=8,
                                      hue=360.0, saturation=100.0, lightness=0.0)
    assert (commands[5].x, commands[5].y) == (8, 8)


# --- 5. Host drivers ---


def test_run_scan_paints_the_whole_surface(quick_config):
    scan = GridScan(20, 12, config=quick_config, resolution=8)
    buffer = PixelBuffer(20, 12)
    buffer.pixels[...] = 255

    result = run_scan(scan, buffer=buffer, verbose=False)

    assert result is buffer
    assert scan.state == ScanState.COMPLETE
    # nothing flips in 0.05 time units: all black
    assert not buffer.pixels.any()


def test_restart_shows_no_residual_samples(quick_config):
    scan = GridScan(40, 30, config=quick_config, resolution=1, batch_size=40)
    buffer = PixelBuffer(40, 30)
    buffer.pixels[...] = 200

    def stop_after_first(scan, batch):
        scan.cancel()

    run_scan(scan, buffer=buffer, on_batch=stop_after_first, verbose=False)
    assert scan.state == ScanState.CANCELLED

    buffer.pixels[...] = 200
    scan.reset()
    run_scan(scan, buffer=buffer, on_batch=stop_after_first, verbose=False)

    # first batch covered row 0 only, the rest was cleared on restart
    assert scan.pixel_index == 40
    assert not buffer.pixels[1:].any()


def test_reconfigure_mid_run_discards_partial_results(quick_config):
    calls = []

    def on_batch(scan, batch):
        calls.append((scan.generation, batch.start_index))
        if len(calls) == 1:
            buffer.pixels[...] = 200
            scan.reconfigure(config=quick_config.replace(m1=2.0))
        elif len(calls) == 2:
            assert not buffer.pixels[1:].any()

    scan = GridScan(40, 30, config=quick_config, resolution=1, batch_size=40)
    buffer = PixelBuffer(40, 30)
    result = run_scan(scan, buffer=buffer, on_batch=on_batch, verbose=False)

    assert calls[0] == (0, 0)
    assert calls[1] == (1, 0)
    assert scan.state == ScanState.COMPLETE
    assert scan.pixel_index == scan.total_pixels
    assert result is buffer


def test_resize_mid_run_gives_a_new_buffer(quick_config):
    def on_batch(scan, batch):
        if scan.generation == 0:
            scan.reconfigure(width=24, height=16)

    scan = GridScan(40, 30, config=quick_config, resolution=8, batch_size=4)
    result = run_scan(scan, on_batch=on_batch, verbose=False)

    assert result.pixels.shape == (16, 24, 3)
    assert scan.pixel_index == 3 * 2


def test_live_preview(quick_config):
    buffer = live_preview(64, 48, config=quick_config, verbose=False)
    assert buffer.pixels.shape == (48, 64, 3)


def test_render_chaos_map_small_surface(quick_config):
    buffer = render_chaos_map(width=30, height=20, config=quick_config, n_jobs=2, verbose=False)
    assert buffer.pixels.shape == (20, 30, 3)
    assert not buffer.pixels.any()
