"""
Client for the remote media services (speech, animation, composition).

Every service takes a multipart upload and answers with a binary body. The
client checks the declared content type of each answer because some of these
services report errors as a JSON body with HTTP 200.

Retry policy (``retry_with_delay``): any failure is retried after a fixed
delay, except an HTTP status of 500 or above, which is treated as final.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar, Union

import httpx

from .errors import RemoteJobFailed, UnexpectedResponseType

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FilePart:
    """
    One named part of a multipart request.

    ``source`` is either an in-memory buffer or a path; paths are read again
    for every attempt so a retry never sends a half-consumed stream.
    """

    filename: str
    source: Union[bytes, Path]
    content_type: str

    async def read(self) -> bytes:
        if isinstance(self.source, Path):
            return await asyncio.to_thread(self.source.read_bytes)
        return self.source


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


async def retry_with_delay(
    operation: Callable[[], Awaitable[T]],
    endpoint: str,
    attempts: int = 12,
    delay: float = 5.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds, up to ``attempts`` times.

    Raises:
        RemoteJobFailed: On exhaustion, or immediately when the remote side
            answered with a 5xx status.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            status_code = _status_code(exc)
            if status_code is not None and status_code >= 500:
                logger.error(f"{endpoint} answered {status_code} on attempt {attempt}, not retrying")
                raise RemoteJobFailed(endpoint, attempt, exc, status_code) from exc
            if attempt == attempts:
                logger.error(f"{endpoint} failed on final attempt {attempt}/{attempts}: {exc}")
                raise RemoteJobFailed(endpoint, attempt, exc, status_code) from exc
            logger.warning(f"Attempt {attempt}/{attempts} against {endpoint} failed ({exc}), retrying in {delay}s")
            await sleep(delay)
    raise RemoteJobFailed(endpoint, attempts, RuntimeError("no attempts were made"))


class RemoteJobClient:
    """
    Submits jobs to remote HTTP services and downloads their artifacts.

    Attributes:
        attempts: Attempts used by the ``*_with_retry`` helpers
        delay: Seconds between attempts
    """

    def __init__(
        self,
        attempts: int = 12,
        delay: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.attempts = attempts
        self.delay = delay
        self._transport = transport
        self._sleep = sleep

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, follow_redirects=True)

    @staticmethod
    def _validate(response: httpx.Response, expected_content_type: str) -> bytes:
        response.raise_for_status()
        content_type = response.headers.get("content-type")
        if not content_type or expected_content_type not in content_type:
            raise UnexpectedResponseType(content_type, expected_content_type)
        return response.content

    async def _deadline(self, operation: Awaitable[T], endpoint: str, timeout: float) -> T:
        try:
            return await asyncio.wait_for(operation, timeout)
        except asyncio.TimeoutError as exc:
            raise httpx.TimeoutException(f"{endpoint} did not finish within {timeout}s") from exc

    async def submit(
        self,
        endpoint: str,
        files: Mapping[str, FilePart],
        expected_content_type: str,
        timeout: float,
    ) -> bytes:
        """
        Send one multipart request and return the response body.

        Raises:
            httpx.HTTPStatusError: On a non-2xx status
            httpx.TimeoutException: If the call does not finish within ``timeout`` seconds
            UnexpectedResponseType: If the body is not ``expected_content_type``
        """
        parts = {name: (part.filename, await part.read(), part.content_type) for name, part in files.items()}
        async with self._client(timeout) as client:
            response = await self._deadline(client.post(endpoint, files=parts), endpoint, timeout)
        logger.info(f"Response received from {endpoint} ({response.status_code})")
        return self._validate(response, expected_content_type)

    async def post_json(
        self,
        endpoint: str,
        payload: Mapping[str, Any],
        expected_content_type: str,
        timeout: float,
    ) -> bytes:
        """Send a JSON body and return the validated binary response."""
        async with self._client(timeout) as client:
            response = await self._deadline(client.post(endpoint, json=dict(payload)), endpoint, timeout)
        logger.info(f"Response received from {endpoint} ({response.status_code})")
        return self._validate(response, expected_content_type)

    async def download(self, url: str, destination: Path, timeout: float) -> Path:
        """Stream ``url`` to ``destination``, giving up after ``timeout`` seconds in total."""
        return await self._deadline(self._stream_to(url, destination, timeout), url, timeout)

    async def _stream_to(self, url: str, destination: Path, timeout: float) -> Path:
        async with self._client(timeout) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with destination.open("wb") as buffer:
                    async for chunk in response.aiter_bytes():
                        buffer.write(chunk)
        logger.info(f"Downloaded {url} to {destination}")
        return destination

    async def submit_with_retry(
        self,
        endpoint: str,
        files: Mapping[str, FilePart],
        expected_content_type: str,
        timeout: float,
    ) -> bytes:
        return await retry_with_delay(
            lambda: self.submit(endpoint, files, expected_content_type, timeout),
            endpoint,
            attempts=self.attempts,
            delay=self.delay,
            sleep=self._sleep,
        )

    async def download_with_retry(self, url: str, destination: Path, timeout: float) -> Path:
        return await retry_with_delay(
            lambda: self.download(url, destination, timeout),
            url,
            attempts=self.attempts,
            delay=self.delay,
            sleep=self._sleep,
        )
