"""
Session Summary Service
=======================

Async client for an OpenAI-compatible chat-completions endpoint that turns a
session's chat transcript into a short written recap.

The service is optional: when no API key is configured ``is_available()`` is
False and callers skip summary generation entirely.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

import aiohttp

from broadcast_sessions.utils.config import get_credential, get_summaries_config
from broadcast_sessions.utils.logger import setup_worker_logger

logger = setup_worker_logger('summarizer')

SYSTEM_PROMPT = (
    "You summarize a webcam broadcast from its chat log. Write a short recap in "
    "markdown: the overall theme, notable moments, the most active chatters and "
    "any tippers mentioned in chat. Do not invent events that are not in the log."
)


class SummaryError(Exception):
    """Summary generation failed (service error, empty transcript or empty reply)."""


@dataclass
class SummaryResult:
    summary_text: str
    tokens_used: int


def build_transcript(rows: Iterable[Tuple[str, str]], max_lines: int = 1000) -> str:
    """Render ``(username, message)`` rows as ``[username] message`` lines."""
    lines = []
    for username, message in rows:
        if len(lines) >= max_lines:
            break
        message = (message or '').strip()
        if not message:
            continue
        lines.append(f"[{username}] {message}")
    return "\n".join(lines)


class SummaryService:
    """Chat-completions client with retry and exponential backoff."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[int] = None,
        retries: Optional[int] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        summaries_config = get_summaries_config(config)
        self.api_key = api_key or get_credential(summaries_config.get('api_key_env', 'OPENAI_API_KEY'))
        self.api_url = (api_url or summaries_config.get('api_url', 'https://api.openai.com/v1')).rstrip('/')
        self.model = model or summaries_config.get('model', 'gpt-4o-mini')
        self.max_tokens = max_tokens or int(summaries_config.get('max_tokens', 2048))
        self.timeout = timeout or int(summaries_config.get('timeout_seconds', 120))
        self.retries = retries or int(summaries_config.get('retries', 3))
        self.max_chat_messages = int(summaries_config.get('max_chat_messages', 1000))

        # Session created lazily with lock to prevent race conditions
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock: Optional[asyncio.Lock] = None

        if not self.api_key:
            logger.warning("Summary API key not configured - AI summaries will not be available")

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session_lock is None:
            self._session_lock = asyncio.Lock()
        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                    headers={'Authorization': f'Bearer {self.api_key}'},
                )
            return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._session_lock = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def generate_preview(self, transcript: str) -> SummaryResult:
        """
        Summarize a chat transcript.

        Args:
            transcript: ``[username] message`` lines

        Returns:
            SummaryResult with the summary text and total tokens used

        Raises:
            SummaryError: If the service is unavailable, the transcript is empty
                or every attempt fails
        """
        if not self.is_available():
            raise SummaryError("Summary API key not configured")
        if not transcript or not transcript.strip():
            raise SummaryError("No chat messages found")

        endpoint = f"{self.api_url}/chat/completions"
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"Chat log:\n\n{transcript}"},
            ],
        }

        last_error: Optional[Exception] = None
        for attempt in range(self.retries):
            try:
                session = await self._get_session()
                async with session.post(endpoint, json=payload) as resp:
                    if resp.status == 200:
                        result = await resp.json()
                        return self._parse_response(result)
                    error_text = await resp.text()
                    last_error = SummaryError(f"Summary request failed ({resp.status}): {error_text}")
                    if resp.status in (429, 500, 502, 503, 504):
                        logger.warning(f"Summary service busy (attempt {attempt + 1}): {resp.status}")
                    else:
                        # Client errors will not succeed on retry
                        logger.error(f"Summary error: {last_error}")
                        break
            except aiohttp.ClientError as e:
                last_error = SummaryError(f"Summary connection error: {e}")
                logger.warning(f"Summary connection error (attempt {attempt + 1}): {e}")
            except asyncio.TimeoutError:
                last_error = SummaryError(f"Summary request timed out after {self.timeout}s")
                logger.warning(f"Summary timeout (attempt {attempt + 1})")

            if attempt < self.retries - 1:
                await asyncio.sleep(2 ** attempt)

        raise last_error or SummaryError("Summary request failed after all retries")

    @staticmethod
    def _parse_response(result: Dict[str, Any]) -> SummaryResult:
        try:
            text = (result["choices"][0]["message"]["content"] or "").strip()
        except (KeyError, IndexError, TypeError):
            raise SummaryError("Malformed summary response")
        if not text:
            raise SummaryError("Summary service returned an empty summary")
        tokens = int((result.get("usage") or {}).get("total_tokens") or 0)
        return SummaryResult(summary_text=text, tokens_used=tokens)
