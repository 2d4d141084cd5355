"""End-to-end pipeline behaviour against the fake codec/transport/sink.

Loads run on the real worker pool. The test thread created the engine, so it
is the owning thread: callbacks and texture builds only happen when the test
ticks the dispatcher/frame queue (see `pump`).
"""

import threading

import numpy as np
import pytest

pytest.importorskip("PySide6")

from async_image.image_engine.bitmap import flip_vertical, size_of  # noqa: E402
from async_image.image_engine.errors import (  # noqa: E402
    DecodeFailure,
    InvalidArgument,
    InvalidRequest,
    TransformFailure,
    ValidationFailure,
)
from async_image.image_engine.metrics import metrics  # noqa: E402
from async_image.image_engine.operations import TextStyle  # noqa: E402
from async_image.image_engine.request import LoadState, Validation  # noqa: E402
from conftest import FakeCodec, fake_image_bytes, make_bitmap, pump  # noqa: E402

TIMEOUT = 5


def _load(engine, request, **kwargs):
    fut = engine.load(request, **kwargs)
    fut.result(timeout=TIMEOUT)
    pump(engine)
    return fut


def test_buffer_load_publishes_flipped_bitmap_and_fires_on_load_once(engine, fake_sink):
    req = engine.new_request(buffer=fake_image_bytes(6, 4))
    calls = []
    threads = []

    def on_load():
        calls.append(req.state)
        threads.append(threading.get_ident())

    _load(engine, req, on_load=on_load)

    assert calls == [LoadState.LOADED]
    assert threads == [threading.get_ident()]
    assert req.is_loaded
    assert np.array_equal(req.bitmap, flip_vertical(make_bitmap(6, 4)))
    assert not req.bitmap.flags.writeable
    assert (req.width, req.height) == (6, 4)
    assert req.decoded_size == (6, 4)

    # texture built once, on the owning thread, from the flipped bitmap
    assert fake_sink.threads == [threading.get_ident()]
    assert req.texture is fake_sink.created[0]
    assert req.texture.size == (6, 4)
    assert np.array_equal(req.texture.pixels, req.bitmap)

    pump(engine)
    assert len(calls) == 1


def test_deferred_replay_matches_post_load_application(engine):
    data = fake_image_bytes(40, 30)
    style = TextStyle(color=(1, 2, 3, 255))

    deferred = engine.new_request(buffer=data)
    ops = [
        deferred.resize(2),
        deferred.crop((2, 3), (10, 8)),
        deferred.draw_text("x", (1, 2), style),
    ]
    _load(engine, deferred)
    for f in ops:
        assert f.result(timeout=TIMEOUT) is None

    later = engine.new_request(buffer=data)
    _load(engine, later)
    later.resize(2).result(timeout=TIMEOUT)
    later.crop((2, 3), (10, 8)).result(timeout=TIMEOUT)
    later.draw_text("x", (1, 2), style).result(timeout=TIMEOUT)

    assert size_of(deferred.bitmap) == (10, 8)
    assert np.array_equal(deferred.bitmap, later.bitmap)
    # the text pixel lands at top-left (1, 2) of the unflipped image
    assert tuple(flip_vertical(later.bitmap)[2, 1]) == (1, 2, 3, 255)


def test_resize_scenario_before_load(settings, fake_transport, fake_sink):
    from async_image.image_engine.engine import ImageEngine

    with ImageEngine(settings, codec=FakeCodec(), transport=fake_transport, texture_sink=fake_sink) as eng:
        req = eng.new_request(buffer=fake_image_bytes(100, 200))
        req.resize(2)
        loads = []
        _load(eng, req, on_load=lambda: loads.append(1))
        assert (req.width, req.height) == (50, 100)
        assert loads == [1]


def test_invalid_argument_leaves_bitmap_untouched(engine):
    req = engine.new_request(buffer=fake_image_bytes(8, 8))
    _load(engine, req)
    before = req.bitmap
    with pytest.raises(InvalidArgument):
        req.resize(0)
    assert req.bitmap is before


def test_corrupt_buffer_fails_load(engine, fake_sink):
    metrics.reset()
    req = engine.new_request(buffer=b"\x00\x01 definitely not an image")
    pending = req.resize(2)
    loads = []

    fut = engine.load(req, on_load=lambda: loads.append(1))
    with pytest.raises(DecodeFailure):
        fut.result(timeout=TIMEOUT)
    pump(engine)

    assert req.state is LoadState.FAILED
    assert req.bitmap is None
    assert loads == []
    assert fake_sink.created == []
    with pytest.raises(DecodeFailure):
        pending.result(timeout=TIMEOUT)
    assert metrics.count("loader.load_failed") == 1


def test_unreachable_url_reports_invalid_and_never_decodes(engine, fake_codec, fake_transport):
    req = engine.new_request(url="http://nowhere.invalid/a.png")
    validated = []
    loads = []
    req.set_on_validated(validated.append)

    fut = engine.load(req, on_load=lambda: loads.append(1))
    with pytest.raises(ValidationFailure):
        fut.result(timeout=TIMEOUT)
    pump(engine)

    assert validated == [False]
    assert loads == []
    assert fake_codec.decode_calls == 0
    assert fake_transport.get_calls == []
    assert req.path_validated is Validation.INVALID


def test_remote_load_downloads_after_validation(engine, fake_transport):
    url = "http://example.test/pic.raw"
    fake_transport.statuses[url] = 200
    fake_transport.bodies[url] = fake_image_bytes(5, 5)
    req = engine.new_request(url=url)
    validated = []
    req.set_on_validated(validated.append)

    _load(engine, req)

    assert validated == [True]
    assert fake_transport.head_calls == [url]
    assert fake_transport.get_calls == [url]
    assert req.is_loaded


def test_missing_local_file_fails_validation(engine, tmp_path):
    req = engine.new_request(path=str(tmp_path / "missing.raw"))
    with pytest.raises(ValidationFailure):
        engine.load(req).result(timeout=TIMEOUT)
    assert req.path_validated is Validation.INVALID


def test_local_orientation_is_applied(settings, fake_transport, fake_sink, tmp_path):
    from async_image.image_engine.engine import ImageEngine

    src = tmp_path / "rot.raw"
    src.write_bytes(fake_image_bytes(6, 3))
    eng = ImageEngine(settings, codec=FakeCodec(orientation=6), transport=fake_transport, texture_sink=fake_sink)
    try:
        req = eng.new_request(path=str(src))
        _load(eng, req)
        assert req.decoded_size == (3, 6)
        assert (req.width, req.height) == (3, 6)
    finally:
        eng.shutdown()


def test_failing_queued_op_is_skipped_under_best_effort(engine):
    req = engine.new_request(buffer=fake_image_bytes(10, 10))
    bad = req.crop((8, 8), (5, 5))
    good = req.resize(2)

    _load(engine, req)

    with pytest.raises(TransformFailure):
        bad.result(timeout=TIMEOUT)
    assert good.result(timeout=TIMEOUT) is None
    assert (req.width, req.height) == (5, 5)
    [(op, err)] = req.failed_operations
    assert op.width == 5 and isinstance(err, TransformFailure)


def test_failing_queued_op_fails_load_under_abort(settings, fake_codec, fake_transport, fake_sink):
    from async_image.image_engine.engine import ImageEngine

    settings.data["queued_operation_policy"] = "abort"
    eng = ImageEngine(settings, codec=fake_codec, transport=fake_transport, texture_sink=fake_sink)
    try:
        req = eng.new_request(buffer=fake_image_bytes(10, 10))
        req.crop((8, 8), (5, 5))
        skipped = req.resize(2)
        loads = []
        fut = eng.load(req, on_load=lambda: loads.append(1))
        with pytest.raises(TransformFailure):
            fut.result(timeout=TIMEOUT)
        pump(eng)
        assert req.state is LoadState.FAILED
        assert loads == []
        assert skipped.cancelled()
    finally:
        eng.shutdown()


def test_reload_is_rejected(engine):
    req = engine.new_request(buffer=fake_image_bytes(2, 2))
    _load(engine, req)
    with pytest.raises(InvalidRequest):
        engine.load(req)


def test_frame_queue_builds_one_texture_per_tick(engine, fake_sink):
    reqs = [engine.new_request(buffer=fake_image_bytes(3, 3), queue_texture_process=True) for _ in range(3)]
    for r in reqs:
        engine.load(r).result(timeout=TIMEOUT)

    assert engine.frame_queue.pending_count == 3
    engine.frame_queue.tick()
    assert len(fake_sink.created) == 1
    engine.frame_queue.tick()
    engine.frame_queue.tick()
    assert len(fake_sink.created) == 3
    assert all(r.texture is not None for r in reqs)


def test_no_texture_when_generation_disabled(engine, fake_sink):
    req = engine.new_request(buffer=fake_image_bytes(3, 3), generate_texture=False)
    _load(engine, req)
    assert req.texture is None
    assert fake_sink.created == []

    ready = []
    req.generate_texture(on_texture_ready=lambda: ready.append(1))
    pump(engine)
    assert ready == [1]
    assert req.texture is not None


def test_post_load_transform_rebuilds_texture(engine, fake_sink):
    req = engine.new_request(buffer=fake_image_bytes(8, 8))
    _load(engine, req)
    first = req.texture

    ready = []
    req.set_on_texture_ready(lambda: ready.append("old"))
    req.set_on_texture_ready(lambda: ready.append("new"))
    req.draw_text("hi", (0, 0), TextStyle(color=(0, 0, 0, 255))).result(timeout=TIMEOUT)
    pump(engine)

    assert ready == ["new"]
    assert req.texture is not first
    assert np.array_equal(req.texture.pixels, req.bitmap)
    assert fake_sink.threads == [threading.get_ident()] * 2


def test_textures_are_never_built_off_the_owning_thread(engine):
    req = engine.new_request(buffer=fake_image_bytes(2, 2))
    _load(engine, req)
    errors = []

    def off_thread():
        try:
            engine.loader._build_texture(req)
        except RuntimeError as e:
            errors.append(e)

    t = threading.Thread(target=off_thread)
    t.start()
    t.join()
    assert len(errors) == 1


def test_save_writes_unflipped_image(engine, tmp_path):
    req = engine.new_request(buffer=fake_image_bytes(4, 3))
    _load(engine, req)
    saved = []
    out = tmp_path / "out.raw"

    assert req.save(str(out), on_save=saved.append).result(timeout=TIMEOUT) is True
    pump(engine)

    assert saved == [True]
    assert out.read_bytes() == fake_image_bytes(4, 3)


def test_save_reports_failure(engine, tmp_path):
    req = engine.new_request(buffer=fake_image_bytes(4, 3))
    _load(engine, req)
    saved = []
    target = tmp_path / "no" / "such" / "dir" / "out.raw"

    assert req.save(str(target), on_save=saved.append).result(timeout=TIMEOUT) is False
    pump(engine)
    assert saved == [False]


def test_info_from_loaded_bitmap_and_local_header(engine, tmp_path):
    src = tmp_path / "img.raw"
    src.write_bytes(fake_image_bytes(7, 5))
    req = engine.new_request(path=str(src))
    req._loader = engine.loader
    info = req.info()
    assert (info.width, info.height) == (7, 5)

    loaded = engine.new_request(buffer=fake_image_bytes(3, 2))
    _load(engine, loaded)
    assert (loaded.info().width, loaded.info().height, loaded.info().bands) == (3, 2, 4)


def test_decode_runs_off_the_owning_thread(engine, fake_codec):
    req = engine.new_request(buffer=fake_image_bytes(2, 2))
    _load(engine, req)
    assert threading.get_ident() not in fake_codec.threads


def test_abort_fails_ops_that_ran_before_the_failure(settings, fake_codec, fake_transport, fake_sink):
    from async_image.image_engine.engine import ImageEngine

    settings.data["queued_operation_policy"] = "abort"
    eng = ImageEngine(settings, codec=fake_codec, transport=fake_transport, texture_sink=fake_sink)
    try:
        req = eng.new_request(buffer=fake_image_bytes(10, 10))
        ran_first = req.resize(2)
        req.crop((50, 50), (2, 2))
        with pytest.raises(TransformFailure):
            eng.load(req).result(timeout=TIMEOUT)
        assert req.bitmap is None
        with pytest.raises(TransformFailure):
            ran_first.result(timeout=TIMEOUT)
    finally:
        eng.shutdown()


class _BlockingCodec(FakeCodec):
    """Holds the first resize until released, so ops can arrive mid-replay."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def resize(self, bitmap, width, height, quality):
        if not self.entered.is_set():
            self.entered.set()
            assert self.release.wait(TIMEOUT)
        return super().resize(bitmap, width, height, quality)


def test_op_deferred_during_replay_runs_after_publish(settings, fake_transport, fake_sink):
    from async_image.image_engine.engine import ImageEngine
    from async_image.image_engine.operations import Crop

    codec = _BlockingCodec()
    eng = ImageEngine(settings, codec=codec, transport=fake_transport, texture_sink=fake_sink)
    try:
        data = fake_image_bytes(20, 16)
        req = eng.new_request(buffer=data)
        resized = req.resize(2)
        load = eng.load(req)
        assert codec.entered.wait(TIMEOUT)

        assert req.is_executing_queued_process
        cropped = req.crop((1, 2), (5, 4))
        # not picked up by the replay already in progress
        assert req.pending_operations == (Crop(1, 2, 5, 4),)
        assert not cropped.done()

        codec.release.set()
        load.result(timeout=TIMEOUT)
        assert resized.result(timeout=TIMEOUT) is None
        assert cropped.result(timeout=TIMEOUT) is None
        pump(eng)

        assert req.pending_operations == ()
        assert (req.width, req.height) == (5, 4)

        reference = eng.new_request(buffer=data)
        eng.load(reference).result(timeout=TIMEOUT)
        reference.resize(2).result(timeout=TIMEOUT)
        reference.crop((1, 2), (5, 4)).result(timeout=TIMEOUT)
        assert np.array_equal(req.bitmap, reference.bitmap)
    finally:
        eng.shutdown()


def test_leftover_ops_fail_when_pool_is_gone(engine):
    from async_image.image_engine.operations import Deferred, ResizeBy

    req = engine.new_request(buffer=fake_image_bytes(8, 8))
    _load(engine, req)
    engine.pool.shutdown()

    items = [Deferred(ResizeBy(2)), Deferred(ResizeBy(4))]
    engine.loader._resubmit(req, items)

    for item in items:
        with pytest.raises(RuntimeError):
            item.future.result(timeout=TIMEOUT)
    assert (req.width, req.height) == (8, 8)
