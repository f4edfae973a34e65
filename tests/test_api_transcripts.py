from src.vision.domain.chunks import StreamDone, TextDelta
from tests.fakes import parse_sse, text_response


def _audio(name="memo.mp3", data=b"ID3fake", mime="audio/mpeg"):
    return ("files", (name, data, mime))


def _transcribe(client, headers, files=None):
    r = client.post("/transcripts/stream", files=files or [_audio()], headers=headers)
    return r, parse_sse(r.text) if r.status_code == 200 else []


def test_stream_transcript_and_manage_it(client, gateway, auth_headers):
    gateway.script(TextDelta("#budget #q3\n\n"), TextDelta("We agreed on the budget."), StreamDone(15))
    r, events = _transcribe(client, auth_headers)
    assert r.status_code == 200
    done = events[-2]
    assert done["done"] is True
    assert done["keywords"] == "#budget #q3"
    assert done["content"] == "We agreed on the budget."
    assert events[-1] == "[DONE]"
    assert gateway.deleted == ["files/1"]

    transcript_id = done["id"]
    listed = client.get("/transcripts", headers=auth_headers).json()
    assert [t["transcript_id"] for t in listed] == [transcript_id]

    gateway.queue(text_response("## Budget\n- agreed", cost=3))
    r = client.post(f"/transcripts/{transcript_id}/refine", json={"refinementKind": "organize"}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json() == {"refinedText": "## Budget\n- agreed", "reportedCost": 3}

    record = client.get(f"/transcripts/{transcript_id}", headers=auth_headers).json()
    assert record["content"] == "## Budget\n- agreed"
    assert record["original_content"] == "We agreed on the budget."
    assert record["refinement"] == "organize"

    assert client.delete(f"/transcripts/{transcript_id}", headers=auth_headers).status_code == 204
    assert client.get(f"/transcripts/{transcript_id}", headers=auth_headers).status_code == 404


def test_multiple_files_are_sent_together(client, gateway, auth_headers):
    files = [_audio("a.mp3"), _audio("b.wav", mime="audio/wav")]
    r, events = _transcribe(client, auth_headers, files)
    assert r.status_code == 200
    attachments = gateway.stream_calls[0]["attachments"]
    assert [a.mime_type for a in attachments] == ["audio/mpeg", "audio/wav"]
    assert sorted(gateway.deleted) == ["files/1", "files/2"]


def test_upload_rejections(client, gateway, auth_headers, settings):
    too_many = [_audio(f"{i}.mp3") for i in range(settings.max_audio_files + 1)]
    assert _transcribe(client, auth_headers, too_many)[0].status_code == 400

    r, _ = _transcribe(client, auth_headers, [_audio("notes.txt", mime="text/plain")])
    assert r.status_code == 400

    r, _ = _transcribe(client, auth_headers, [_audio(data=b"")])
    assert r.status_code == 400
    assert gateway.uploaded == []


def test_oversized_upload_is_413(client, auth_headers, settings, gateway):
    settings.max_upload_bytes = 10
    r, _ = _transcribe(client, auth_headers, [_audio(data=b"x" * 11)])
    assert r.status_code == 413
    assert gateway.uploaded == []


def test_file_never_ready_is_504_and_cleaned_up(client, gateway, auth_headers):
    gateway.upload_state = "PROCESSING"
    r, _ = _transcribe(client, auth_headers)
    assert r.status_code == 504
    assert gateway.deleted == ["files/1"]
    assert gateway.stream_calls == []


def test_refine_unknown_transcript_and_kind(client, auth_headers):
    r = client.post("/transcripts/nope/refine", json={"refinementKind": "organize"}, headers=auth_headers)
    assert r.status_code == 404
    r = client.post("/transcripts/nope/refine", json={"refinementKind": "summarize"}, headers=auth_headers)
    assert r.status_code == 422
