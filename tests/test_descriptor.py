"""Tests for :mod:`chatwire.ai.descriptor`."""

from __future__ import annotations

import pytest

from chatwire.ai.descriptor import (
    FormBody,
    JsonBody,
    NoBody,
    Placeholder,
    RawBody,
    compile_descriptor,
    supports_images,
)
from chatwire.ai.errors import CompileError, ErrorCode
from helpers import OPENAI_CURL, VISION_CURL


class TestCompileDescriptor:
    def test_openai_style_command(self) -> None:
        descriptor = compile_descriptor(OPENAI_CURL, provider_id="openai")

        assert descriptor.id == "openai"
        assert descriptor.kind == "completion"
        assert descriptor.method == "POST"
        assert descriptor.url == "https://api.example.test/v1/chat/completions"
        assert descriptor.header("authorization") == "Bearer {{API_KEY}}"
        assert isinstance(descriptor.body, JsonBody)
        assert descriptor.placeholders == frozenset({Placeholder.TEXT, Placeholder.HISTORY})
        assert descriptor.variables == frozenset({"API_KEY", "MODEL"})

    def test_line_continuations_and_prompt_marker(self) -> None:
        raw = "$ curl \\\n  -X PUT \\\n  https://example.test/items \\\n  -H 'Accept: text/plain'"

        descriptor = compile_descriptor(raw)

        assert descriptor.method == "PUT"
        assert descriptor.url == "https://example.test/items"
        assert descriptor.headers == (("Accept", "text/plain"),)
        assert isinstance(descriptor.body, NoBody)

    def test_attached_short_option_values(self) -> None:
        descriptor = compile_descriptor("curl -XPATCH -HX-Trace:1 https://example.test")

        assert descriptor.method == "PATCH"
        assert descriptor.header("X-Trace") == "1"

    def test_long_option_with_equals(self) -> None:
        descriptor = compile_descriptor("curl --request=DELETE --url=https://example.test/a")

        assert descriptor.method == "DELETE"
        assert descriptor.url == "https://example.test/a"

    def test_defaults_to_get_without_body(self) -> None:
        descriptor = compile_descriptor("curl -s -N https://example.test/stream")

        assert descriptor.method == "GET"

    def test_scheme_is_added_when_missing(self) -> None:
        descriptor = compile_descriptor("curl localhost:11434/api/chat -d '{}'")

        assert descriptor.url == "http://localhost:11434/api/chat"
        assert descriptor.method == "POST"

    def test_placeholder_url_is_accepted(self) -> None:
        descriptor = compile_descriptor("curl {{BASE_URL}}/v1/chat -d '{}'")

        assert descriptor.url == "{{BASE_URL}}/v1/chat"
        assert "BASE_URL" in descriptor.variables

    def test_non_json_data_becomes_raw_form_encoded(self) -> None:
        descriptor = compile_descriptor("curl https://example.test -d 'q={{TEXT}}' -d 'lang=en'")

        assert isinstance(descriptor.body, RawBody)
        assert descriptor.body.template == "q={{TEXT}}&lang=en"
        assert descriptor.header("Content-Type") == "application/x-www-form-urlencoded"

    def test_json_shorthand_adds_headers(self) -> None:
        descriptor = compile_descriptor("""curl https://example.test --json '{"q": "{{TEXT}}"}'""")

        assert isinstance(descriptor.body, JsonBody)
        assert descriptor.header("Content-Type") == "application/json"
        assert descriptor.header("Accept") == "application/json"

    def test_get_flag_moves_data_to_query(self) -> None:
        descriptor = compile_descriptor("curl -G https://example.test/search -d 'q={{TEXT}}'")

        assert descriptor.method == "GET"
        assert descriptor.url == "https://example.test/search?q={{TEXT}}"
        assert isinstance(descriptor.body, NoBody)

    def test_max_time_and_basic_auth(self) -> None:
        descriptor = compile_descriptor("curl -m 30 -u 'bot:{{PASSWORD}}' https://example.test")

        assert descriptor.timeout == 30.0
        assert descriptor.basic_auth == "bot:{{PASSWORD}}"
        assert descriptor.variables == frozenset({"PASSWORD"})

    def test_placeholder_names_are_case_insensitive(self) -> None:
        descriptor = compile_descriptor("""curl https://example.test -d '{"k": "{{ api_key }}", "t": "{{text}}"}'""")

        assert descriptor.variables == frozenset({"API_KEY"})
        assert descriptor.placeholders == frozenset({Placeholder.TEXT})

    def test_derived_id_is_stable(self) -> None:
        first = compile_descriptor(OPENAI_CURL)
        second = compile_descriptor(OPENAI_CURL)

        assert first.id == second.id
        assert first.id.startswith("provider-")

    def test_response_path_is_kept(self) -> None:
        descriptor = compile_descriptor(OPENAI_CURL, response_path=" output.text ")

        assert descriptor.response_path == "output.text"


class TestCompileErrors:
    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   ",
            "wget https://example.test",
            "curl -H 'Authorization' https://example.test",
            "curl -X",
            "curl -H 'Accept: */*'",
            "curl 'https://example.test -d '{}'",
            "curl ftp://example.test/file",
            "curl -m soon https://example.test",
        ],
    )
    def test_malformed_descriptions(self, raw: str) -> None:
        with pytest.raises(CompileError) as excinfo:
            compile_descriptor(raw)

        assert excinfo.value.error_code == ErrorCode.MALFORMED
        assert excinfo.value.user_message().startswith("Invalid provider")

    def test_invalid_placeholder_name(self) -> None:
        with pytest.raises(CompileError) as excinfo:
            compile_descriptor("""curl https://example.test -d '{"q": "{{not a name}}"}'""")

        assert excinfo.value.error_code == ErrorCode.UNKNOWN_PLACEHOLDER

    def test_variable_outside_allowed_set(self) -> None:
        with pytest.raises(CompileError) as excinfo:
            compile_descriptor(OPENAI_CURL, allowed_variables={"api_key"})

        assert excinfo.value.details == {"placeholder": "MODEL"}


class TestTranscriptionDescriptors:
    def test_audio_aliases_are_rewritten(self) -> None:
        raw = (
            "curl https://stt.example.test/v1/audio "
            "-H 'Authorization: Bearer {{API_KEY}}' "
            "-F 'file=@{{AUDIO_BASE64}};type=audio/wav' -F model=whisper-1"
        )

        descriptor = compile_descriptor(raw, kind="transcription", provider_id="stt")

        assert descriptor.kind == "transcription"
        assert isinstance(descriptor.body, FormBody)
        audio_field = descriptor.body.fields[0]
        assert audio_field.name == "file"
        assert audio_field.value == "{{AUDIO}}"
        assert audio_field.is_file
        assert descriptor.uses(Placeholder.AUDIO)

    def test_image_token_means_audio_for_transcription(self) -> None:
        raw = """curl https://stt.example.test -d '{"audio": "{{IMAGE}}"}'"""

        descriptor = compile_descriptor(raw, kind="transcription")

        assert descriptor.placeholders == frozenset({Placeholder.AUDIO})


class TestImageSupport:
    def test_supports_images_counts_slots(self) -> None:
        descriptor = compile_descriptor(VISION_CURL)

        assert supports_images(descriptor)
        assert descriptor.image_slots() == 2

    def test_text_only_provider(self) -> None:
        descriptor = compile_descriptor(OPENAI_CURL)

        assert not supports_images(descriptor)
        assert descriptor.image_slots() == 0
