import asyncio

import pytest
from fakes import FakeCaptureBackend

from voice_lesson.audio_capture import MIME_TYPE_PREFERENCE, AudioCaptureSession, RecordingStatus
from voice_lesson.errors import DeviceUnavailable, PermissionDenied, UnsupportedEnvironment


def run(coro):
    return asyncio.run(coro)


def test_three_chunks_make_one_blob():
    backend = FakeCaptureBackend()
    session = AudioCaptureSession(backend)

    async def scenario():
        await session.start()
        for _ in range(3):
            backend.streams[-1].emit(b"\x01" * 1000)
        return await session.stop()

    blob = run(scenario())
    assert blob.size == 3000
    assert blob.mime_type == session.mime_type == "audio/webm;codecs=opus"
    assert backend.opened == [("audio/webm;codecs=opus", 100)]
    assert backend.streams[-1].released


@pytest.mark.parametrize("mime_type", MIME_TYPE_PREFERENCE)
def test_each_supported_type_yields_blob_of_that_type(mime_type):
    backend = FakeCaptureBackend(supported_types=[mime_type])
    session = AudioCaptureSession(backend)

    async def scenario():
        await session.start()
        backend.streams[-1].emit(b"abc")
        return await session.stop()

    blob = run(scenario())
    assert blob.mime_type == mime_type
    assert blob.size == 3


def test_preference_order_picks_first_supported():
    backend = FakeCaptureBackend(supported_types=["audio/mp4", "audio/ogg;codecs=opus"])
    session = AudioCaptureSession(backend)
    run(session.start())
    assert session.mime_type == "audio/ogg;codecs=opus"


def test_stop_before_start_and_double_stop_are_noops():
    backend = FakeCaptureBackend()
    session = AudioCaptureSession(backend)

    async def scenario():
        assert await session.stop() is None
        await session.start()
        backend.streams[-1].emit(b"x")
        first = await session.stop()
        second = await session.stop()
        return first, second

    first, second = run(scenario())
    assert first is not None
    assert second is None
    assert session.status == RecordingStatus.STOPPED


def test_duplicate_start_opens_one_stream():
    backend = FakeCaptureBackend()
    session = AudioCaptureSession(backend)

    async def scenario():
        await session.start()
        await session.start()

    run(scenario())
    assert len(backend.opened) == 1
    assert session.is_recording


def test_flushed_chunks_are_included_and_empty_chunks_ignored():
    backend = FakeCaptureBackend(flush_chunks=[b"", b"tail"])
    session = AudioCaptureSession(backend)

    async def scenario():
        await session.start()
        backend.streams[-1].emit(b"")
        backend.streams[-1].emit(b"head-")
        return await session.stop()

    assert run(scenario()).data == b"head-tail"


def test_nothing_captured_returns_none():
    backend = FakeCaptureBackend()
    session = AudioCaptureSession(backend)

    async def scenario():
        await session.start()
        return await session.stop()

    assert run(scenario()) is None
    assert session.blob is None


def test_permission_requested_once_and_grant_cached():
    backend = FakeCaptureBackend()
    session = AudioCaptureSession(backend)

    async def scenario():
        for _ in range(2):
            await session.start()
            backend.streams[-1].emit(b"x")
            await session.stop()

    run(scenario())
    assert backend.permission_requests == 1


def test_denial_is_cached_and_session_returns_to_idle():
    backend = FakeCaptureBackend(permission=False)
    session = AudioCaptureSession(backend)

    for _ in range(2):
        with pytest.raises(PermissionDenied):
            run(session.start())
        assert session.status == RecordingStatus.IDLE
    assert backend.permission_requests == 1
    assert backend.opened == []


def test_no_supported_type_is_unsupported_environment():
    backend = FakeCaptureBackend(supported_types=[])
    session = AudioCaptureSession(backend)
    with pytest.raises(UnsupportedEnvironment):
        run(session.start())
    assert session.status == RecordingStatus.IDLE


def test_missing_recording_api_is_unsupported_environment():
    backend = FakeCaptureBackend(supported=False)
    session = AudioCaptureSession(backend)
    with pytest.raises(UnsupportedEnvironment) as exc_info:
        run(session.start())
    assert exc_info.value.code == "NOT_SUPPORTED"


def test_device_in_use_surfaces_distinct_code():
    backend = FakeCaptureBackend(open_error=DeviceUnavailable("busy", code="DEVICE_IN_USE"))
    session = AudioCaptureSession(backend)
    with pytest.raises(DeviceUnavailable) as exc_info:
        run(session.start())
    assert exc_info.value.code == "DEVICE_IN_USE"
    assert session.status == RecordingStatus.IDLE
    assert not session.is_recording


def test_dispose_releases_stream_and_drops_late_chunks():
    backend = FakeCaptureBackend()
    session = AudioCaptureSession(backend)

    async def scenario():
        await session.start()
        stream = backend.streams[-1]
        stream.emit(b"early")
        session.dispose()
        stream.emit(b"late")
        return stream, await session.stop()

    stream, blob = run(scenario())
    assert stream.released
    assert stream.track_count == 0
    assert blob is None
    assert session.is_disposed


def test_clear_blob():
    backend = FakeCaptureBackend()
    session = AudioCaptureSession(backend)

    async def scenario():
        await session.start()
        backend.streams[-1].emit(b"x")
        await session.stop()

    run(scenario())
    assert session.blob is not None
    session.clear_blob()
    assert session.blob is None


def test_failed_stop_discards_recording_and_allows_restart():
    backend = FakeCaptureBackend(stop_error=OSError("Stream is stopped", -9988))
    session = AudioCaptureSession(backend)

    async def failing():
        await session.start()
        backend.streams[-1].emit(b"partial")
        await session.stop()

    with pytest.raises(OSError):
        run(failing())
    assert session.status == RecordingStatus.IDLE
    assert backend.streams[-1].released
    assert session.blob is None

    backend.stop_error = None

    async def retry():
        await session.start()
        backend.streams[-1].emit(b"fresh")
        return await session.stop()

    blob = run(retry())
    assert blob.data == b"fresh"
    assert len(backend.streams) == 2
