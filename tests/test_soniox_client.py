"""Unit tests for the upstream transcription client (fake websocket, no network)."""

import asyncio

import pytest

from apps.relay.errors import (
    ConfigurationError,
    HandshakeTimeout,
    ParseError,
    TransportError,
    UpstreamServiceError,
)
from apps.relay.soniox_client import SonioxClient
from conftest import FakeClock, FakeConnector, FakeUpstreamSocket, no_sleep, settle


def final(text, start=None, end=None):
    token = {"text": text, "is_final": True}
    if start is not None:
        token.update(start_ms=start, end_ms=end)
    return token


def partial(text):
    return {"text": text, "is_final": False}


def make_client(config, listener, connector, clock=None):
    return SonioxClient(
        config,
        listener,
        session_id="test",
        connector=connector,
        clock=clock or FakeClock(),
        sleep=no_sleep,
    )


class TestConnect:
    """Tests for connection setup."""

    @pytest.mark.asyncio
    async def test_sends_handshake_first(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)

        await client.connect()
        try:
            socket = connector.sockets[0]
            assert connector.urls == [soniox_config.ws_url]
            assert socket.handshake == {
                "api_key": "test-soniox-key",
                "model": "stt-rt-preview",
                "language_hints": ["zh", "en"],
                "enable_endpoint_detection": True,
                "audio_format": "pcm_f32le",
                "sample_rate": 16000,
                "num_channels": 1,
            }
            assert client.is_open
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("api_key", ["", "   ", "bad key"])
    async def test_rejects_missing_or_malformed_key(self, soniox_config, listener, api_key):
        connector = FakeConnector()
        client = make_client(soniox_config.model_copy(update={"api_key": api_key}), listener, connector)

        with pytest.raises(ConfigurationError) as exc_info:
            await client.connect()

        assert exc_info.value.fatal
        assert connector.calls == 0

    @pytest.mark.asyncio
    async def test_rejects_insecure_url(self, soniox_config, listener):
        connector = FakeConnector()
        config = soniox_config.model_copy(update={"ws_url": "ws://stt-rt.soniox.com/transcribe-websocket"})

        with pytest.raises(ConfigurationError):
            await make_client(config, listener, connector).connect()

        assert connector.calls == 0

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, soniox_config, listener):
        async def hanging_connector(url):
            await asyncio.sleep(10)

        config = soniox_config.model_copy(update={"handshake_timeout_sec": 0.05})
        client = make_client(config, listener, hanging_connector)

        with pytest.raises(HandshakeTimeout) as exc_info:
            await client.connect()

        assert exc_info.value.fatal
        assert isinstance(exc_info.value, ConnectionError)

    @pytest.mark.asyncio
    async def test_transport_failure(self, soniox_config, listener):
        client = make_client(soniox_config, listener, FakeConnector(OSError("refused")))

        with pytest.raises(TransportError):
            await client.connect()

        assert not client.is_open


class TestAudio:
    @pytest.mark.asyncio
    async def test_frames_forwarded_verbatim(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        await client.send_audio(b"\x00\x00\x80\x3f" * 4)
        await client.send_audio(b"")
        await client.stop_transcription()

        assert connector.sockets[0].audio == [b"\x00\x00\x80\x3f" * 4, b""]
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_send_before_connect_reports_error(self, soniox_config, listener):
        client = make_client(soniox_config, listener, FakeConnector())

        await client.send_audio(b"\x01\x02")

        assert len(listener.errors) == 1
        assert isinstance(listener.errors[0], TransportError)
        assert not listener.errors[0].fatal


class TestMessages:
    """Tests for inbound message processing."""

    @pytest.mark.asyncio
    async def test_final_and_partial_tokens(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].push({"tokens": [final("Hel", 0, 100), final("lo", 100, 200), partial(" wor")]})
        await settle()

        (text, is_final, words), (partial_text, partial_final, partial_words) = listener.transcripts
        assert (text, is_final) == ("Hello", True)
        assert [w.to_wire() for w in words] == [{"word": "Hello", "startTime": 0.0, "endTime": 0.2}]
        assert (partial_text, partial_final, partial_words) == ("Hello wor", False, None)
        assert client.final_transcript == "Hello"
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_final_text_accumulates(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].push({"tokens": [final("Hello", 0, 500)]})
        connector.sockets[0].push({"tokens": [final(" world", 500, 1000)]})
        await settle()

        assert listener.transcripts[-1][0] == "Hello world"
        assert [w.word for w in listener.transcripts[-1][2]] == ["Hello", "world"]
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_untimed_token_counts_as_text_only(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].push({"tokens": [final("ok", "x", None), final(" go", 300, 100)]})
        await settle()

        assert listener.transcripts == [("ok go", True, [])]
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_untimed_token_still_splits_words(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].push({"tokens": [
            final("Hel", 0, 100), final("lo", 100, 200), final(" world"), final("s", 300, 400),
        ]})
        await settle()

        ((text, is_final, words),) = listener.transcripts
        assert (text, is_final) == ("Hello worlds", True)
        assert [(w.word, w.start_time, w.end_time) for w in words] == [
            ("Hello", 0.0, 0.2),
            ("worlds", 0.3, 0.4),
        ]
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_end_marker_fires_endpoint(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].push({"tokens": [final("hi", 0, 100), final("<end>", 100, 100)]})
        await settle()

        assert listener.endpoints == 1
        assert [w.word for w in client.words] == ["hi"]
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_message_is_skipped(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].push("{not json")
        connector.sockets[0].push({"tokens": [final("still here", 0, 100)]})
        await settle()

        assert isinstance(listener.errors[0], ParseError)
        assert not listener.errors[0].fatal
        assert listener.transcripts[0][0] == "still here"
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_service_error_is_reported(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].push({"error_code": 401, "error_message": "Invalid API key"})
        await settle()

        error = listener.errors[0]
        assert isinstance(error, UpstreamServiceError)
        assert error.code == 401
        assert "Invalid API key" in str(error)
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_finished_releases_wait(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].push({"tokens": [], "finished": True})
        await settle()

        assert await client.wait_finished(0.1)
        await client.disconnect()


class TestReconnect:
    """Tests for bounded reconnection."""

    @pytest.mark.asyncio
    async def test_four_abnormal_closes_give_three_attempts_then_fatal(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        for expected_attempts in (1, 2, 3):
            connector.sockets[-1].drop(1006)
            await settle()
            assert client.reconnect_attempts == expected_attempts
            assert listener.fatal_errors == []

        connector.sockets[-1].drop(1006)
        await settle()

        assert client.reconnect_attempts == 3
        assert connector.calls == 4
        assert len(listener.fatal_errors) == 1
        assert str(listener.fatal_errors[0]) == "Connection to transcription service lost"
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_failed_reconnects_exhaust_budget(self, soniox_config, listener):
        connector = FakeConnector(FakeUpstreamSocket(), OSError("down"), OSError("down"), OSError("down"))
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].drop(1011)
        await settle()

        assert client.reconnect_attempts == 3
        assert connector.calls == 4
        assert len(listener.fatal_errors) == 1
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_received_message_refills_budget(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        for _ in range(5):
            connector.sockets[-1].drop(1006)
            await settle()
            connector.sockets[-1].push({"tokens": []})
            await settle()

        assert client.reconnect_attempts == 5
        assert listener.fatal_errors == []
        assert client.is_open
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_socket_error_while_receiving_reconnects(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].fail(ConnectionResetError("reset by peer"))
        await settle()

        assert client.reconnect_attempts == 1
        assert connector.calls == 2
        assert isinstance(listener.errors[0], TransportError)
        assert not listener.errors[0].fatal
        assert "reset by peer" in str(listener.errors[0])
        assert client.is_open
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_normal_close_does_not_reconnect(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        connector.sockets[0].drop(1000)
        await settle()

        assert connector.calls == 1
        assert listener.errors == []
        assert not client.is_open
        await client.disconnect()


class TestLiveness:
    @pytest.mark.asyncio
    async def test_silent_and_closed_triggers_reconnect(self, soniox_config, listener):
        clock = FakeClock(100.0)
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector, clock=clock)
        await client.connect()
        connector.sockets[0].drop(1000)
        await settle()

        clock.advance(29)
        assert not await client.check_liveness()

        clock.advance(2)
        assert await client.check_liveness()
        assert connector.calls == 2
        assert client.is_open
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_open_connection_is_left_alone(self, soniox_config, listener):
        clock = FakeClock(0.0)
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector, clock=clock)
        await client.connect()

        clock.advance(120)

        assert not await client.check_liveness()
        assert connector.calls == 1
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, soniox_config, listener):
        connector = FakeConnector()
        client = make_client(soniox_config, listener, connector)
        await client.connect()

        await client.disconnect()
        await client.disconnect()

        assert connector.sockets[0].closed
        assert not client.is_open
