"""
Conversion strategies: interchangeable PDF to PSD backends.

Each strategy turns one input PDF into one output PSD and reports progress
on its own 0-100 scale through a ``ProgressSink``. Strategies are tried in
preference order by ``StrategyChain``; they know nothing about jobs, quotas
or fallback.

Available kinds:
    - ``photopea``: remote conversion through the Photopea HTTP API
    - ``pymupdf``: local rendering of the first page with PyMuPDF, written
      as a flattened PSD at a configurable resolution
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Type

import fitz  # PyMuPDF
import requests

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, str], None]


@dataclass(frozen=True)
class ConversionResult:
    success: bool
    output_path: Path
    file_size: int
    metadata: Dict[str, Any] = field(default_factory=dict)


class ConversionStrategy(ABC):
    """
    Uniform interface over a conversion backend.

    Attributes:
        name: Identifier used in logs, progress messages and results
        init_timeout: Seconds allowed for ``initialize``
        exec_timeout: Seconds allowed for ``convert``
    """

    name: str = "strategy"
    init_timeout: float = 30.0
    exec_timeout: float = 120.0

    async def initialize(self) -> None:
        """Ready the backing engine. The default has nothing to prepare."""

    @abstractmethod
    async def convert(self, input_path: Path, output_path: Path, progress: ProgressSink) -> ConversionResult:
        """Write the converted document to ``output_path``."""

    async def close(self) -> None:
        """Release whatever ``initialize`` acquired."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class PhotopeaStrategy(ConversionStrategy):
    """
    Remote conversion through the Photopea API.

    The PDF is posted as multipart form data and the response body is the
    PSD. Failed requests are retried ``max_retries`` times with a fixed delay.
    An HTML body is treated as an error page, not a document.
    """

    init_timeout = 15.0
    exec_timeout = 180.0

    def __init__(
        self,
        name: str = "photopea",
        api_url: str = "https://www.photopea.com/api/",
        max_retries: int = 3,
        retry_delay: float = 2.0,
        request_timeout: float = 120.0,
        init_timeout: Optional[float] = None,
        exec_timeout: Optional[float] = None,
    ) -> None:
        self.name = name
        self.api_url = api_url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.request_timeout = request_timeout
        if init_timeout is not None:
            self.init_timeout = init_timeout
        if exec_timeout is not None:
            self.exec_timeout = exec_timeout
        self._session: Optional[requests.Session] = None

    async def initialize(self) -> None:
        self._session = requests.Session()
        self._session.headers["User-Agent"] = "PDF-to-PSD-Converter/1.0"
        response = await asyncio.to_thread(self._session.get, self.api_url, timeout=10)
        response.raise_for_status()
        logger.info(f"Photopea API reachable at {self.api_url}")

    async def convert(self, input_path: Path, output_path: Path, progress: ProgressSink) -> ConversionResult:
        if self._session is None:
            raise RuntimeError("PhotopeaStrategy used before initialize()")
        progress(10, "Uploading PDF to Photopea...")
        content = await self._request_with_retries(input_path, progress)

        progress(80, "Processing conversion response...")
        if not content:
            raise ValueError("Received empty PSD file from Photopea")
        head = content[:100].decode("utf-8", errors="ignore").lower()
        if "<!doctype html" in head or "<html" in head:
            raise ValueError("Photopea API returned HTML instead of file data")

        progress(90, "Saving PSD file...")
        await asyncio.to_thread(output_path.write_bytes, content)
        progress(100, "Conversion completed successfully")
        return ConversionResult(True, output_path, len(content), {"source": "photopea"})

    async def _request_with_retries(self, input_path: Path, progress: ProgressSink) -> bytes:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            progress(10 + attempt * 20, f"Attempt {attempt}/{self.max_retries} - Calling Photopea API...")
            try:
                return await asyncio.to_thread(self._post, input_path)
            except requests.RequestException as exc:
                last_error = exc
                logger.warning(f"Photopea attempt {attempt} failed: {exc}")
                if attempt < self.max_retries:
                    progress(10 + attempt * 20, f"Retrying in {self.retry_delay:g} seconds...")
                    await asyncio.sleep(self.retry_delay)
        raise RuntimeError(f"Photopea API unavailable: {last_error}")

    def _post(self, input_path: Path) -> bytes:
        with input_path.open("rb") as handle:
            response = self._session.post(
                self.api_url,
                files={"file": (input_path.name, handle, "application/pdf")},
                data={"format": "psd", "quality": "100"},
                timeout=self.request_timeout,
            )
        response.raise_for_status()
        return response.content

    async def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None


class PyMuPDFStrategy(ConversionStrategy):
    """
    Local rendering with PyMuPDF.

    Renders the first page at ``dpi`` and saves the pixmap in PSD format.
    Rendering runs in a worker thread; progress is reported from there.
    """

    init_timeout = 5.0
    exec_timeout = 120.0

    def __init__(
        self,
        name: str = "pymupdf",
        dpi: int = 300,
        init_timeout: Optional[float] = None,
        exec_timeout: Optional[float] = None,
    ) -> None:
        self.name = name
        self.dpi = dpi
        if init_timeout is not None:
            self.init_timeout = init_timeout
        if exec_timeout is not None:
            self.exec_timeout = exec_timeout

    async def convert(self, input_path: Path, output_path: Path, progress: ProgressSink) -> ConversionResult:
        return await asyncio.to_thread(self._render, input_path, output_path, progress)

    def _render(self, input_path: Path, output_path: Path, progress: ProgressSink) -> ConversionResult:
        progress(10, "Reading PDF...")
        with fitz.open(str(input_path)) as doc:
            if doc.page_count == 0:
                raise ValueError("No pages found in PDF")
            page_count = doc.page_count
            progress(30, f"Rendering page 1 of {page_count} at {self.dpi} dpi...")
            pixmap = doc[0].get_pixmap(dpi=self.dpi, alpha=False)

            progress(80, "Writing PSD...")
            pixmap.save(str(output_path), output="psd")
        size = output_path.stat().st_size
        progress(100, "PSD written")
        return ConversionResult(
            True,
            output_path,
            size,
            {"width": pixmap.width, "height": pixmap.height, "page_count": page_count, "dpi": self.dpi},
        )


STRATEGY_KINDS: Dict[str, Type[ConversionStrategy]] = {
    "photopea": PhotopeaStrategy,
    "pymupdf": PyMuPDFStrategy,
}


def build_strategies(entries: List[Mapping[str, Any]], enhanced: bool = False) -> List[ConversionStrategy]:
    """
    Instantiate strategies from configuration entries, in preference order.

    Disabled entries are skipped; when ``enhanced`` is set only entries marked
    ``enhanced: true`` are kept.
    """
    strategies: List[ConversionStrategy] = []
    for entry in entries:
        if not entry.get("enabled", True):
            continue
        if enhanced and not entry.get("enhanced", False):
            continue
        kind = entry["kind"]
        try:
            strategy_cls = STRATEGY_KINDS[kind]
        except KeyError:
            raise ValueError(f"Unknown conversion strategy kind '{kind}'") from None
        timeouts = {key: float(entry[key]) for key in ("init_timeout", "exec_timeout") if entry.get(key) is not None}
        strategies.append(strategy_cls(name=entry.get("name", kind), **timeouts, **dict(entry.get("options") or {})))
    return strategies
