"""Attachment ingestion: photos, documents and voice notes to text.

Photos and image documents go through a vision model, PDFs through the
responses API with an inline file, plain-text documents are decoded
directly and voice notes are transcribed with Whisper. Every model call
is recorded in the usage ledger.
"""

import base64
import time
from pathlib import PurePosixPath
from typing import Any, Awaitable, Callable, Optional, Tuple

import structlog
from openai import AsyncOpenAI

from ..exceptions import MediaError
from ..llm.interface import Usage
from ..llm.usage import UsageRecorder, estimate_cost
from .gate import Attachment

logger = structlog.get_logger()

MAX_TEXT_DOC_BYTES = 10 * 1024 * 1024
MAX_PDF_BYTES = 20 * 1024 * 1024
VISION_MODEL = "gpt-4.1"
VISION_MAX_TOKENS = 1200
PDF_MAX_OUTPUT_TOKENS = 4000
TRANSCRIPTION_MODEL = "whisper-1"
WHISPER_USD_PER_MINUTE = 0.006

TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-ndjson",
}
IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp")

PDF_SYSTEM_PROMPT = "You are an OCR extractor. Return only extracted text in reading order."
PDF_TOO_LARGE = "PDF is too large for inline OCR. Please send a smaller PDF."
TEXT_TOO_LARGE = (
    "Document is too large for inline text extraction. "
    "Please send a smaller text file."
)

# (file_id) -> (content, platform file path)
FileFetcher = Callable[[str], Awaitable[Tuple[bytes, str]]]


def telegram_file_fetcher(bot: Any) -> FileFetcher:
    """Download files through a python-telegram-bot ``Bot``."""

    async def fetch(file_id: str) -> Tuple[bytes, str]:
        tg_file = await bot.get_file(file_id)
        data = await tg_file.download_as_bytearray()
        return bytes(data), tg_file.file_path or ""

    return fetch


def is_text_document(mime_type: Optional[str]) -> bool:
    if not mime_type:
        return False
    return mime_type in TEXT_MIME_TYPES or mime_type.startswith("text/")


def _ocr_prompt(what: str, caption: str) -> str:
    prompt = f"Extract all readable text from this {what}."
    if caption:
        prompt += f" Caption/context: {caption}"
    return prompt


class MediaExtractor:
    """Turns an ``Attachment`` into text for the agent."""

    def __init__(
        self,
        fetch: FileFetcher,
        api_key: Optional[str] = None,
        pdf_model: str = VISION_MODEL,
        usage_recorder: Optional[UsageRecorder] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._fetch = fetch
        self.pdf_model = pdf_model
        self._usage = usage_recorder
        if client is not None:
            self.client: Optional[AsyncOpenAI] = client
        elif api_key:
            self.client = AsyncOpenAI(api_key=api_key)
        else:
            self.client = None

    def _require_client(self) -> AsyncOpenAI:
        if self.client is None:
            raise MediaError("OpenAI API key is not configured")
        return self.client

    async def to_text(self, attachment: Attachment, caption: str = "") -> str:
        """Extracted text; empty when nothing readable was found.

        Raises:
            MediaError: No API key configured or the file is unavailable.
        """
        client = self._require_client()
        try:
            data, file_path = await self._fetch(attachment.file_id)
        except Exception as e:
            raise MediaError(f"Failed to download {attachment.kind}: {e}") from e

        logger.info(
            "Extracting attachment text",
            kind=attachment.kind,
            bytes=len(data),
            mime_type=attachment.mime_type,
        )

        if attachment.kind == "voice":
            return await self.transcribe(client, data, attachment.duration_seconds or 0)
        if attachment.kind == "photo":
            return await self.extract_image(client, data, caption)
        return await self.extract_document(client, attachment, data, file_path, caption)

    async def extract_document(
        self,
        client: AsyncOpenAI,
        attachment: Attachment,
        data: bytes,
        file_path: str,
        caption: str,
    ) -> str:
        mime_type = attachment.mime_type or ""
        suffix = PurePosixPath(file_path.lower()).suffix

        if mime_type.startswith("image/") or suffix in IMAGE_SUFFIXES:
            return await self.extract_image(client, data, caption)

        if mime_type == "application/pdf" or suffix == ".pdf":
            if len(data) > MAX_PDF_BYTES:
                return PDF_TOO_LARGE
            return await self.extract_pdf(
                client, data, attachment.file_name or "document.pdf", caption
            )

        if is_text_document(mime_type):
            if len(data) > MAX_TEXT_DOC_BYTES:
                return TEXT_TOO_LARGE
            return data.decode("utf-8", errors="replace").strip()

        name = attachment.file_name or file_path
        return (
            f'I received document "{name}", but this format is not supported for '
            "text extraction yet. Send it as PDF, image/screenshot, or plain text."
        )

    async def extract_image(self, client: AsyncOpenAI, data: bytes, caption: str) -> str:
        start = time.monotonic()
        encoded = base64.b64encode(data).decode("ascii")
        response = await client.chat.completions.create(
            model=VISION_MODEL,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": _ocr_prompt("image", caption)},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/jpeg;base64,{encoded}"},
                        },
                    ],
                }
            ],
            max_tokens=VISION_MAX_TOKENS,
        )
        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0
        await self._record(
            VISION_MODEL,
            "vision_ocr",
            Usage(
                input_tokens,
                output_tokens,
                estimate_cost(VISION_MODEL, input_tokens, output_tokens),
            ),
            start,
        )

        text = response.choices[0].message.content if response.choices else None
        return (text or "").strip()

    async def extract_pdf(
        self, client: AsyncOpenAI, data: bytes, file_name: str, caption: str
    ) -> str:
        start = time.monotonic()
        encoded = base64.b64encode(data).decode("ascii")
        response = await client.responses.create(
            model=self.pdf_model,
            input=[
                {"role": "system", "content": PDF_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": _ocr_prompt("PDF document", caption)},
                        {
                            "type": "input_file",
                            "filename": file_name,
                            "file_data": f"data:application/pdf;base64,{encoded}",
                        },
                    ],
                },
            ],
            max_output_tokens=PDF_MAX_OUTPUT_TOKENS,
        )
        input_tokens = response.usage.input_tokens if response.usage else 0
        output_tokens = response.usage.output_tokens if response.usage else 0
        await self._record(
            self.pdf_model,
            "pdf_ocr",
            Usage(
                input_tokens,
                output_tokens,
                estimate_cost(self.pdf_model, input_tokens, output_tokens),
            ),
            start,
        )
        return (response.output_text or "").strip()

    async def transcribe(self, client: AsyncOpenAI, data: bytes, duration_seconds: int) -> str:
        start = time.monotonic()
        result = await client.audio.transcriptions.create(
            model=TRANSCRIPTION_MODEL,
            file=("voice.ogg", data, "audio/ogg"),
            response_format="text",
        )
        await self._record(
            TRANSCRIPTION_MODEL,
            "transcription",
            Usage(cost_usd=duration_seconds / 60 * WHISPER_USD_PER_MINUTE),
            start,
        )
        text = result if isinstance(result, str) else getattr(result, "text", "")
        return (text or "").strip()

    async def _record(self, model: str, purpose: str, usage: Usage, start: float) -> None:
        if self._usage:
            await self._usage.record(
                provider="openai",
                model=model,
                purpose=purpose,
                usage=usage,
                latency_ms=int((time.monotonic() - start) * 1000),
            )
