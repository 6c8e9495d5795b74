"""
Listening audio: Amazon Polly neural synthesis stored in Amazon S3.

Objects live at a deterministic key per owner/week/task/accent, so a retry
overwrites the previous attempt instead of leaving orphans behind.
"""
from __future__ import annotations

import math
import re
from contextlib import closing
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import unquote, urlparse

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)
from flask import current_app

from .accents import DEFAULT_ACCENT, normalize_accent, voice_for_accent
from .aws import create_boto3_client
from .deadlines import Deadline, DeadlineExceeded

AUDIO_CONTENT_TYPE = 'audio/mpeg'
AUDIO_CACHE_CONTROL = 'public, max-age=86400'
# Polly neural accepts 3000 billed characters per request
MAX_CHARS_PER_REQUEST = 2800

_SENTENCE_SPLIT_PATTERN = re.compile(r'(?<=[.!?])\s+')
_MISSING_OBJECT_CODES = {'404', 'NoSuchKey', 'NotFound'}
_CREDENTIAL_ERROR_CODES = {
    'UnrecognizedClientException',
    'InvalidClientTokenId',
    'SignatureDoesNotMatch',
    'ExpiredToken',
    'ExpiredTokenException',
}

_CLIENT_ERROR_REASONS = {
    'InvalidParameterValueException': 'Invalid text or voice parameters for Polly',
    'InvalidSsmlException': 'Invalid text or voice parameters for Polly',
    'TextLengthExceededException': 'Script text is too long for Polly synthesis',
    'NoSuchBucket': 'S3 bucket not found',
    'AccessDenied': 'AWS permissions denied',
    'AccessDeniedException': 'AWS permissions denied',
}


class AudioGenerationError(RuntimeError):
    """Raised internally when synthesis output fails a sanity check."""


@dataclass
class AudioResult:
    success: bool
    audio_url: Optional[str] = None
    duration: Optional[int] = None
    accent: Optional[str] = None
    size_bytes: int = 0
    reused: bool = False
    error: Optional[str] = None


def describe_aws_error(exc: Exception) -> str:
    """Turn a botocore failure into a short reason string."""
    if isinstance(exc, ClientError):
        code = exc.response.get('Error', {}).get('Code', '')
        if code in _CLIENT_ERROR_REASONS:
            return _CLIENT_ERROR_REASONS[code]
        if code in _CREDENTIAL_ERROR_CODES:
            return 'AWS credentials not properly configured'
        message = exc.response.get('Error', {}).get('Message') or str(exc)
        return f'AWS request failed ({code or "unknown"}): {message}'
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return 'AWS credentials not properly configured'
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return 'Network error connecting to AWS services'
    return str(exc) or 'Failed to generate audio'


def estimate_duration(script_text: str, words_per_minute: int = 165) -> int:
    """Spoken duration in whole seconds, rounded up from the word count."""
    word_count = len(script_text.split())
    return math.ceil(word_count / words_per_minute * 60)


def split_for_synthesis(text: str, max_chars: int = MAX_CHARS_PER_REQUEST) -> List[str]:
    """Split text on sentence boundaries into pieces Polly accepts in one request."""
    text = text.strip()
    if len(text) <= max_chars:
        return [text]

    chunks: List[str] = []
    current = ''
    for sentence in _SENTENCE_SPLIT_PATTERN.split(text):
        pieces = [sentence]
        if len(sentence) > max_chars:
            # Very long sentence: fall back to word boundaries
            pieces, buf = [], ''
            for word in sentence.split():
                if buf and len(buf) + 1 + len(word) > max_chars:
                    pieces.append(buf)
                    buf = word
                else:
                    buf = f'{buf} {word}' if buf else word
            if buf:
                pieces.append(buf)

        for piece in pieces:
            if current and len(current) + 1 + len(piece) > max_chars:
                chunks.append(current)
                current = piece
            else:
                current = f'{current} {piece}' if current else piece
    if current:
        chunks.append(current)
    return chunks


class AudioSynthesizer:
    """Synthesizes a script with Polly and publishes the MP3 to S3."""

    def __init__(
        self,
        polly_client,
        s3_client,
        bucket: str,
        region: str,
        min_bytes: int = 2048,
        reject_undersized: bool = True,
        words_per_minute: int = 165,
        sample_rate: str = '22050',
    ):
        self.polly = polly_client
        self.s3 = s3_client
        self.bucket = bucket
        self.region = region
        self.min_bytes = min_bytes
        self.reject_undersized = reject_undersized
        self.words_per_minute = words_per_minute
        self.sample_rate = sample_rate

    # ------------------------------------------------------------------ keys

    @staticmethod
    def build_key(owner_id: str, week_number: int, task_id: str, accent: str) -> str:
        return f'audio/{owner_id}/week-{week_number}/task-{task_id}-{accent.lower()}.mp3'

    def public_url(self, key: str) -> str:
        return f'https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}'

    def key_from_url(self, audio_url: Optional[str]) -> Optional[str]:
        """Return the object key of a URL in this bucket, or None for anything else."""
        if not audio_url:
            return None
        parsed = urlparse(audio_url.strip())
        host = (parsed.hostname or '').lower()
        if parsed.scheme != 'https' or not host.startswith(f'{self.bucket.lower()}.s3.'):
            return None
        if not host.endswith('.amazonaws.com'):
            return None
        key = unquote(parsed.path.lstrip('/'))
        return key or None

    # ------------------------------------------------------------- synthesis

    def synthesize(
        self,
        script_text: str,
        accent: Optional[str],
        owner_id: str,
        task_id: str,
        week_number: int,
        deadline: Optional[Deadline] = None,
    ) -> AudioResult:
        """Synthesize, sanity-check and upload audio for a task. Never raises."""
        if not script_text or not script_text.strip():
            return AudioResult(success=False, error='Script text is required for audio generation')

        accent = normalize_accent(accent) if accent else DEFAULT_ACCENT
        voice_id = voice_for_accent(accent)
        current_app.logger.info(
            "[Audio Generation] Generating audio for task %s (accent=%s, voice=%s, chars=%s, week=%s)",
            task_id,
            accent,
            voice_id,
            len(script_text),
            week_number,
        )

        try:
            audio_bytes = self._synthesize_bytes(script_text, voice_id, deadline)
            self._check_size(audio_bytes, task_id, script_text)
            key = self.build_key(owner_id, week_number, task_id, accent)
            if deadline is not None:
                deadline.check('Audio upload')
            self._upload(key, audio_bytes)
        except (BotoCoreError, ClientError) as exc:
            reason = describe_aws_error(exc)
            current_app.logger.error(
                "[Audio Generation] AWS error for task %s (chars=%s, voice=%s): %s",
                task_id,
                len(script_text),
                voice_id,
                reason,
            )
            return AudioResult(success=False, accent=accent, error=reason)
        except (AudioGenerationError, DeadlineExceeded) as exc:
            current_app.logger.error("[Audio Generation] Failed for task %s: %s", task_id, exc)
            return AudioResult(success=False, accent=accent, error=str(exc))

        duration = estimate_duration(script_text, self.words_per_minute)
        audio_url = self.public_url(key)
        current_app.logger.info(
            "[Audio Generation] Stored audio for task %s at %s (%s bytes, ~%ss)",
            task_id,
            audio_url,
            len(audio_bytes),
            duration,
        )
        return AudioResult(
            success=True,
            audio_url=audio_url,
            duration=duration,
            accent=accent,
            size_bytes=len(audio_bytes),
        )

    def _synthesize_bytes(self, text: str, voice_id: str, deadline: Optional[Deadline]) -> bytes:
        parts = []
        for chunk in split_for_synthesis(text):
            if deadline is not None:
                deadline.check('Audio synthesis')
            response = self.polly.synthesize_speech(
                Engine='neural',
                OutputFormat='mp3',
                SampleRate=self.sample_rate,
                Text=chunk,
                VoiceId=voice_id,
            )
            stream = response.get('AudioStream')
            if stream is None:
                raise AudioGenerationError('Polly returned no audio stream')
            with closing(stream):
                parts.append(stream.read())
        return b''.join(parts)

    def _check_size(self, audio_bytes: bytes, task_id: str, script_text: str) -> None:
        if not audio_bytes:
            raise AudioGenerationError('Generated audio buffer is empty')
        if len(audio_bytes) < self.min_bytes:
            current_app.logger.warning(
                "[Audio Generation] Suspiciously small audio for task %s: %s bytes for %s words "
                "(likely silent output)",
                task_id,
                len(audio_bytes),
                len(script_text.split()),
            )
            if self.reject_undersized:
                raise AudioGenerationError(
                    f'Generated audio is suspiciously small ({len(audio_bytes)} bytes)'
                )

    def _upload(self, key: str, audio_bytes: bytes) -> None:
        self.s3.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=audio_bytes,
            ContentType=AUDIO_CONTENT_TYPE,
            CacheControl=AUDIO_CACHE_CONTROL,
        )
        try:
            head = self.s3.head_object(Bucket=self.bucket, Key=key)
            current_app.logger.info(
                "[Audio Generation] Upload verified s3://%s/%s (ContentLength=%s, ContentType=%s)",
                self.bucket,
                key,
                head.get('ContentLength'),
                head.get('ContentType'),
            )
        except (BotoCoreError, ClientError) as exc:
            current_app.logger.warning(
                "[Audio Generation] Could not verify upload of s3://%s/%s: %s", self.bucket, key, exc
            )

    # -------------------------------------------------------------- probing

    def audio_exists(self, audio_url: Optional[str]) -> bool:
        """Check whether a stored audio URL still points at an object.

        False only when the object is confirmed absent or the URL is not an
        object URL in this bucket. Any other failed check counts as present
        so a flaky check never triggers a re-synthesis.
        """
        key = self.key_from_url(audio_url)
        if key is None:
            current_app.logger.warning("[Audio Generation] Not an object URL in bucket %s: %s", self.bucket, audio_url)
            return False

        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get('Error', {}).get('Code', ''))
            if code in _MISSING_OBJECT_CODES:
                return False
            current_app.logger.warning("[Audio Generation] Existence check failed for %s: %s", key, exc)
            return True
        except BotoCoreError as exc:
            current_app.logger.warning("[Audio Generation] Existence check failed for %s: %s", key, exc)
            return True
        return True


def get_audio_synthesizer(timeout: Optional[float] = None) -> AudioSynthesizer:
    """Build a synthesizer from the application config."""
    config = current_app.config
    region = config['AWS_REGION']
    return AudioSynthesizer(
        polly_client=create_boto3_client('polly', region_name=region, timeout=timeout),
        s3_client=create_boto3_client('s3', region_name=region, timeout=timeout),
        bucket=config['AUDIO_BUCKET'],
        region=region,
        min_bytes=config['AUDIO_MIN_BYTES'],
        reject_undersized=config['AUDIO_REJECT_UNDERSIZED'],
        words_per_minute=config['AUDIO_WORDS_PER_MINUTE'],
        sample_rate=config['POLLY_SAMPLE_RATE'],
    )
