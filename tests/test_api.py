"""Tests for the HTTP and WebSocket endpoints."""

import io

import soundfile as sf

from beatparser.analysis.engine import VERSION
from tests.conftest import SR, generate_click_track


def wav_bytes(audio, sr=SR):
    buf = io.BytesIO()
    sf.write(buf, audio, sr, format="WAV")
    return buf.getvalue()


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": VERSION}


def test_parse_upload(client, click_120):
    response = client.post(
        "/api/parse",
        files={"file": ("clicks.wav", wav_bytes(click_120), "audio/wav")},
        params={"selection_method": "adaptive"},
    )
    assert response.status_code == 200
    data = response.json()
    assert abs(data["tempo"]["bpm"] - 120) < 3
    assert len(data["beats"]) > 10
    assert data["metadata"]["filename"] == "clicks.wav"


def test_parse_upload_target_count(client, click_120):
    response = client.post(
        "/api/parse",
        files={"file": ("clicks.wav", wav_bytes(click_120), "audio/wav")},
        params={"target_picture_count": 4, "selection_method": "uniform"},
    )
    assert response.status_code == 200
    assert len(response.json()["beats"]) == 4


def test_unsupported_extension(client):
    response = client.post("/api/parse", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert response.status_code == 400


def test_corrupt_audio(client):
    response = client.post("/api/parse", files={"file": ("broken.wav", b"not really audio", "audio/wav")})
    assert response.status_code == 422
    assert "/" not in response.json()["detail"]


def test_websocket_parse_buffer(client):
    audio = generate_click_track(bpm=120, duration_seconds=4)
    with client.websocket_connect("/api/ws/offload") as ws:
        ws.send_json({
            "id": "job-1",
            "type": "parse-buffer",
            "payload": {"audio_data": audio.tolist(), "options": {"selection_method": "energy"}},
        })
        while True:
            message = ws.receive_json()
            assert message["id"] == "job-1"
            if message["type"] != "progress":
                break
    assert message["type"] == "result"
    assert message["payload"]["beats"]
    assert message["payload"]["tempo"]["bpm"] > 0


def test_websocket_malformed_message(client):
    with client.websocket_connect("/api/ws/offload") as ws:
        ws.send_json({"id": "bad-1", "type": "launch-missiles"})
        message = ws.receive_json()
    assert message["id"] == "bad-1"
    assert message["type"] == "error"
    assert message["payload"]["code"] == "MESSAGE_CORRUPT"
