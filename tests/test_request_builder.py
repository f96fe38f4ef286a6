"""Tests for :mod:`chatwire.ai.request_builder`."""

from __future__ import annotations

import base64
import json

import pytest

from chatwire.ai.descriptor import ProviderDescriptor, compile_descriptor
from chatwire.ai.errors import BuildError, ErrorCode
from chatwire.ai.request_builder import Bindings, build_request, serialize_history
from chatwire.chat.message_model import AttachedFile, Message
from helpers import VISION_CURL

STT_CURL = (
    "curl https://stt.example.test/v1/audio -H 'Authorization: Bearer {{API_KEY}}' "
    "-F 'file=@{{AUDIO}};type=audio/wav' -F model=whisper-1"
)


def _image(index: int) -> AttachedFile:
    return AttachedFile.from_bytes(f"image-{index}".encode(), name=f"shot-{index}.png", mime_type="image/png")


def _vision_images(body: str) -> list[str]:
    content = json.loads(body)["messages"][0]["content"]
    return [part["image_url"]["url"] for part in content if part["type"] == "image_url"]


def test_history_and_text_scenario() -> None:
    descriptor = compile_descriptor(
        """curl https://api.example.test -d '{"messages": {{HISTORY}}, "input": "{{TEXT}}"}'"""
    )

    request = build_request(descriptor, Bindings(user_text="Hi"))

    assert json.loads(request.body or "") == {"messages": [], "input": "Hi"}
    assert request.method == "POST"


def test_binding_every_placeholder_leaves_none(openai_descriptor: ProviderDescriptor) -> None:
    history = [{"role": "user", "content": "Earlier"}, {"role": "assistant", "content": "Reply"}]

    request = build_request(
        openai_descriptor,
        Bindings(user_text="Now", history=history, variables={"API_KEY": "sk-1", "MODEL": "m-1"}),
    )

    assert request.unresolved_placeholders() == []
    assert request.header("Authorization") == "Bearer sk-1"
    payload = json.loads(request.body or "")
    assert payload == {"model": "m-1", "stream": True, "input": "Now", "messages": history}
    assert request.provider_id == "openai"
    assert request.warnings == ()


def test_text_is_escaped_inside_json_strings(openai_descriptor: ProviderDescriptor) -> None:
    text = 'He said "hi"\nthen left \\ {braces}'

    request = build_request(
        openai_descriptor,
        Bindings(user_text=text, variables={"api_key": "k", "model": "m"}),
    )

    assert json.loads(request.body or "")["input"] == text


def test_unquoted_variables_keep_their_json_type() -> None:
    descriptor = compile_descriptor(
        "curl https://api.example.test -d '{\"max_tokens\": {{MAX_TOKENS}}, \"temperature\": {{TEMP}}, "
        "\"stream\": {{STREAM}}, \"model\": {{MODEL}}, \"label\": \"n={{MAX_TOKENS}}\", \"input\": \"{{TEXT}}\"}'"
    )

    request = build_request(
        descriptor,
        Bindings(
            user_text="100",
            variables={"MAX_TOKENS": "100", "TEMP": " 0.5 ", "STREAM": "false", "MODEL": "gpt-test"},
        ),
    )

    assert json.loads(request.body or "") == {
        "max_tokens": 100,
        "temperature": 0.5,
        "stream": False,
        "model": "gpt-test",
        "label": "n=100",
        "input": "100",
    }


def test_missing_variable_raises_before_sending(openai_descriptor: ProviderDescriptor) -> None:
    with pytest.raises(BuildError) as excinfo:
        build_request(openai_descriptor, Bindings(user_text="Hi", variables={"MODEL": "m"}))

    assert excinfo.value.error_code == ErrorCode.MISSING_BINDING
    assert excinfo.value.placeholder == "API_KEY"
    assert excinfo.value.user_message().startswith("Provider misconfigured")


def test_audio_placeholder_without_audio() -> None:
    descriptor = compile_descriptor(STT_CURL, kind="transcription")

    with pytest.raises(BuildError) as excinfo:
        build_request(descriptor, Bindings(user_text="", variables={"API_KEY": "k"}))

    assert excinfo.value.placeholder == "AUDIO"


def test_audio_becomes_multipart_upload() -> None:
    descriptor = compile_descriptor(STT_CURL, kind="transcription")
    audio = AttachedFile.from_bytes(b"RIFF....WAVE", name="note.wav", mime_type="audio/wav")

    request = build_request(descriptor, Bindings(user_text="", audio=audio, variables={"API_KEY": "k"}))

    assert request.form == (("model", "whisper-1"),)
    assert len(request.files) == 1
    upload = request.files[0]
    assert upload.field_name == "file"
    assert upload.filename == "note.wav"
    assert upload.content == b"RIFF....WAVE"
    assert upload.content_type == "audio/wav"
    assert request.body is None


def test_extra_images_are_dropped_with_warning() -> None:
    descriptor = compile_descriptor(VISION_CURL)
    images = [_image(index) for index in range(5)]

    request = build_request(descriptor, Bindings(user_text="What is this?", images=images, variables={"API_KEY": "k"}))

    assert _vision_images(request.body or "") == [
        f"data:image/png;base64,{images[0].payload}",
        f"data:image/png;base64,{images[1].payload}",
    ]
    assert len(request.warnings) == 1
    assert "3 image attachment(s) dropped" in request.warnings[0]


def test_unfilled_image_slots_are_pruned() -> None:
    descriptor = compile_descriptor(VISION_CURL)
    image = _image(0)

    one = build_request(descriptor, Bindings(user_text="Look", images=[image], variables={"API_KEY": "k"}))
    none = build_request(descriptor, Bindings(user_text="Look", variables={"API_KEY": "k"}))

    assert _vision_images(one.body or "") == [f"data:image/png;base64,{image.payload}"]
    assert _vision_images(none.body or "") == []
    assert json.loads(none.body or "")["messages"][0]["content"] == [{"type": "text", "text": "Look"}]
    assert one.warnings == () and none.warnings == ()


def test_system_prompt_defaults_to_empty() -> None:
    descriptor = compile_descriptor(
        """curl https://api.example.test -d '{"system": "{{SYSTEM_PROMPT}}", "prompt": "{{TEXT}}"}'"""
    )

    unbound = build_request(descriptor, Bindings(user_text="Hi"))
    bound = build_request(descriptor, Bindings(user_text="Hi", system_prompt="Be brief"))

    assert json.loads(unbound.body or "")["system"] == ""
    assert json.loads(bound.body or "")["system"] == "Be brief"


def test_url_values_are_percent_encoded() -> None:
    descriptor = compile_descriptor("curl '{{BASE_URL}}/search?q={{TEXT}}&key={{API_KEY}}'")

    request = build_request(
        descriptor,
        Bindings(
            user_text="a b&c",
            variables={"BASE_URL": "http://localhost:8080", "API_KEY": "k/1"},
        ),
    )

    assert request.url == "http://localhost:8080/search?q=a%20b%26c&key=k%2F1"
    assert request.method == "GET"


def test_raw_body_substitution() -> None:
    descriptor = compile_descriptor("curl https://api.example.test -d 'q={{TEXT}}&model={{MODEL}}'")

    request = build_request(descriptor, Bindings(user_text="hello", variables={"MODEL": "tiny"}))

    assert request.body == "q=hello&model=tiny"
    assert request.header("Content-Type") == "application/x-www-form-urlencoded"


def test_basic_auth_header() -> None:
    descriptor = compile_descriptor("curl -u 'bot:{{PASSWORD}}' https://api.example.test")

    request = build_request(descriptor, Bindings(user_text="", variables={"PASSWORD": "pw"}))

    expected = base64.b64encode(b"bot:pw").decode("ascii")
    assert request.header("Authorization") == f"Basic {expected}"


def test_timeout_is_carried_over() -> None:
    descriptor = compile_descriptor("curl --max-time 12.5 https://api.example.test")

    assert build_request(descriptor, Bindings(user_text="")).timeout == 12.5


def test_serialize_history_accepts_messages() -> None:
    messages = [Message.create("user", "Hello"), Message.create("assistant", "Hi there")]

    assert serialize_history(messages) == [
        {"role": "user", "content": "Hello"},
        {"role": "assistant", "content": "Hi there"},
    ]


def test_serialize_history_requires_role() -> None:
    with pytest.raises(TypeError):
        serialize_history([{"content": "orphan"}])
