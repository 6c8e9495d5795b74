import math
from unittest import mock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from conftest import BUCKET, REGION, SCRIPT_TEXT, make_polly

from app.ielts_listening.services.accents import normalize_accent, voice_for_accent
from app.ielts_listening.services.audio_synthesizer import (
    AudioSynthesizer,
    describe_aws_error,
    estimate_duration,
    split_for_synthesis,
)
from app.ielts_listening.services.deadlines import Deadline


def _client_error(code, operation="SynthesizeSpeech"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


# ---------------------------------------------------------------- accents

@pytest.mark.parametrize(
    "accent, voice",
    [
        ("British", "Amy"),
        ("American", "Matthew"),
        ("Canadian", "Joanna"),
        ("Australian", "Olivia"),
        ("NewZealand", "Aria"),
        ("Scottish", "Amy"),
        ("", "Amy"),
        (None, "Amy"),
    ],
)
def test_voice_for_accent(accent, voice):
    assert voice_for_accent(accent) == voice


def test_normalize_accent_handles_spacing_and_case():
    assert normalize_accent("New Zealand") == "NewZealand"
    assert normalize_accent("new-zealand") == "NewZealand"
    assert normalize_accent("AMERICAN") == "American"
    assert normalize_accent(" uk ") == "British"
    assert normalize_accent(42) == "British"


# ------------------------------------------------------------- synthesis

def test_synthesize_uploads_mp3_under_deterministic_key(app, synthesizer, polly, fake_s3):
    result = synthesizer.synthesize(SCRIPT_TEXT, "Australian", "user-1", "task-9", 2)

    key = "audio/user-1/week-2/task-task-9-australian.mp3"
    assert result.success is True
    assert result.audio_url == f"https://{BUCKET}.s3.{REGION}.amazonaws.com/{key}"
    assert result.duration == math.ceil(len(SCRIPT_TEXT.split()) / 165 * 60)
    assert result.accent == "Australian"

    polly.synthesize_speech.assert_called_once_with(
        Engine="neural",
        OutputFormat="mp3",
        SampleRate="22050",
        Text=SCRIPT_TEXT,
        VoiceId="Olivia",
    )
    put = fake_s3.put_calls[0]
    assert put["Bucket"] == BUCKET
    assert put["Key"] == key
    assert put["ContentType"] == "audio/mpeg"
    assert put["CacheControl"] == "public, max-age=86400"
    assert "ACL" not in put


def test_unknown_accent_uses_british_voice(app, synthesizer, polly):
    result = synthesizer.synthesize(SCRIPT_TEXT, "Martian", "user-1", "t1", 1)

    assert result.success is True
    assert result.accent == "British"
    assert result.audio_url.endswith("task-t1-british.mp3")
    assert polly.synthesize_speech.call_args.kwargs["VoiceId"] == "Amy"


def test_undersized_audio_is_rejected_by_default(app, fake_s3):
    synthesizer = AudioSynthesizer(make_polly(b"\x00" * 100), fake_s3, BUCKET, REGION)

    result = synthesizer.synthesize(SCRIPT_TEXT, "British", "user-1", "t1", 1)

    assert result.success is False
    assert "suspiciously small" in result.error
    assert fake_s3.put_calls == []


def test_undersized_audio_can_be_allowed(app, fake_s3):
    synthesizer = AudioSynthesizer(make_polly(b"\x00" * 100), fake_s3, BUCKET, REGION, reject_undersized=False)

    with mock.patch.object(app.logger, "warning") as warning:
        result = synthesizer.synthesize(SCRIPT_TEXT, "British", "user-1", "t1", 1)

    assert result.success is True
    assert result.size_bytes == 100
    assert warning.called


def test_empty_audio_is_always_a_failure(app, fake_s3):
    synthesizer = AudioSynthesizer(make_polly(b""), fake_s3, BUCKET, REGION, reject_undersized=False)

    result = synthesizer.synthesize(SCRIPT_TEXT, "British", "user-1", "t1", 1)

    assert result.success is False
    assert "empty" in result.error


def test_missing_stream_is_a_failure(app, fake_s3):
    polly = mock.Mock()
    polly.synthesize_speech.return_value = {}
    synthesizer = AudioSynthesizer(polly, fake_s3, BUCKET, REGION)

    assert synthesizer.synthesize(SCRIPT_TEXT, "British", "user-1", "t1", 1).success is False


def test_empty_script_fails_without_calling_polly(app, synthesizer, polly):
    result = synthesizer.synthesize("  ", "British", "user-1", "t1", 1)

    assert result.success is False
    polly.synthesize_speech.assert_not_called()


@pytest.mark.parametrize(
    "error, reason",
    [
        (_client_error("TextLengthExceededException"), "Script text is too long for Polly synthesis"),
        (_client_error("InvalidParameterValueException"), "Invalid text or voice parameters for Polly"),
        (_client_error("AccessDeniedException"), "AWS permissions denied"),
        (_client_error("UnrecognizedClientException"), "AWS credentials not properly configured"),
        (NoCredentialsError(), "AWS credentials not properly configured"),
        (EndpointConnectionError(endpoint_url="https://polly.eu-west-2.amazonaws.com"),
         "Network error connecting to AWS services"),
    ],
)
def test_provider_errors_become_reason_strings(app, fake_s3, error, reason):
    polly = mock.Mock()
    polly.synthesize_speech.side_effect = error
    synthesizer = AudioSynthesizer(polly, fake_s3, BUCKET, REGION)

    result = synthesizer.synthesize(SCRIPT_TEXT, "British", "user-1", "t1", 1)

    assert result.success is False
    assert result.error == reason


def test_upload_errors_are_reported(app, polly):
    s3 = mock.Mock()
    s3.put_object.side_effect = _client_error("NoSuchBucket", "PutObject")
    synthesizer = AudioSynthesizer(polly, s3, BUCKET, REGION)

    result = synthesizer.synthesize(SCRIPT_TEXT, "British", "user-1", "t1", 1)

    assert result.success is False
    assert result.error == "S3 bucket not found"


def test_failed_upload_verification_only_logs(app, polly):
    s3 = mock.Mock()
    s3.head_object.side_effect = _client_error("403", "HeadObject")
    synthesizer = AudioSynthesizer(polly, s3, BUCKET, REGION)

    assert synthesizer.synthesize(SCRIPT_TEXT, "British", "user-1", "t1", 1).success is True


def test_unknown_client_error_keeps_code_in_reason():
    assert "Throttling" in describe_aws_error(_client_error("Throttling"))


def test_expired_deadline_stops_synthesis(app, synthesizer, polly):
    result = synthesizer.synthesize(SCRIPT_TEXT, "British", "user-1", "t1", 1, deadline=Deadline(0))

    assert result.success is False
    polly.synthesize_speech.assert_not_called()


# --------------------------------------------------------- long scripts

def test_long_scripts_are_split_on_sentences():
    sentence = "The library opens at nine and closes at half past eight in the evening. "
    text = sentence * 80

    chunks = split_for_synthesis(text, max_chars=500)

    assert len(chunks) > 1
    assert all(len(chunk) <= 500 for chunk in chunks)
    assert all(chunk.endswith(".") for chunk in chunks)
    assert " ".join(chunks).split() == text.split()


def test_oversized_sentence_falls_back_to_words():
    text = "word " * 400

    chunks = split_for_synthesis(text, max_chars=300)

    assert all(len(chunk) <= 300 for chunk in chunks)
    assert " ".join(chunks).split() == text.split()


def test_multi_chunk_audio_is_concatenated(app, fake_s3):
    polly = make_polly(b"\x01" * 3000)
    synthesizer = AudioSynthesizer(polly, fake_s3, BUCKET, REGION)
    text = "This sentence is repeated to make a long script. " * 120

    result = synthesizer.synthesize(text, "British", "user-1", "t1", 1)

    assert result.success is True
    calls = polly.synthesize_speech.call_count
    assert calls > 1
    assert len(fake_s3.put_calls[0]["Body"]) == 3000 * calls


def test_estimate_duration_rounds_up():
    assert estimate_duration("word " * 165) == 60
    assert estimate_duration("word " * 166) == 61
    assert estimate_duration("") == 0


# ---------------------------------------------------------- existence

def test_audio_exists_for_stored_object(app, synthesizer, fake_s3):
    result = synthesizer.synthesize(SCRIPT_TEXT, "British", "user-1", "t1", 1)

    assert synthesizer.audio_exists(result.audio_url) is True


def test_audio_missing_when_object_absent(app, synthesizer):
    url = synthesizer.public_url("audio/user-1/week-1/task-t1-british.mp3")
    assert synthesizer.audio_exists(url) is False


@pytest.mark.parametrize(
    "url",
    [
        None,
        "",
        "not a url",
        "https://other-bucket.s3.eu-west-2.amazonaws.com/audio/x.mp3",
        "https://cdn.example.com/audio/x.mp3",
    ],
)
def test_foreign_or_invalid_urls_count_as_missing(app, synthesizer, url):
    assert synthesizer.audio_exists(url) is False


def test_inconclusive_existence_check_counts_as_present(app, polly):
    s3 = mock.Mock()
    s3.head_object.side_effect = _client_error("403", "HeadObject")
    synthesizer = AudioSynthesizer(polly, s3, BUCKET, REGION)

    assert synthesizer.audio_exists(synthesizer.public_url("audio/a.mp3")) is True


def test_key_from_url_round_trips(app, synthesizer):
    key = "audio/user-1/week-3/task-abc-newzealand.mp3"
    assert synthesizer.key_from_url(synthesizer.public_url(key)) == key
