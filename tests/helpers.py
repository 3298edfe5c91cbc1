"""
Shared test doubles for the conversion pipeline tests.
"""

import asyncio
import threading
import time
from io import BytesIO
from pathlib import Path
from typing import List, Optional

import fitz

from pdf2psd_backend.strategies import ConversionResult, ConversionStrategy
from pdf2psd_backend.strategy_chain import StrategyChain

PSD_MAGIC = b"8BPS"


def make_pdf_bytes(text: str = "Hello PSD", pages: int = 1) -> bytes:
    """Build a small but real PDF document with PyMuPDF."""
    doc = fitz.open()
    for index in range(pages):
        page = doc.new_page()
        page.insert_text((72, 72), f"{text} - page {index + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def padded_pdf(size: int) -> bytes:
    """A valid PDF followed by comment padding up to ``size`` bytes."""
    data = make_pdf_bytes()
    if len(data) >= size:
        return data
    return data + b"\n%" + b"0" * (size - len(data) - 2)


class FakeStream:
    """Async readable over in-memory bytes, shaped like UploadFile."""

    def __init__(self, data: bytes) -> None:
        self._buffer = BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        return self._buffer.read(size)


class FakeStrategy(ConversionStrategy):
    """
    Scriptable strategy: reports ``steps`` as progress, optionally stalls or
    raises, then writes a ``size``-byte PSD-looking file.
    """

    def __init__(
        self,
        name: str,
        size: int = 4096,
        steps=(25, 50, 75, 100),
        delay: float = 0.0,
        init_delay: float = 0.0,
        error: Optional[Exception] = None,
        init_timeout: float = 1.0,
        exec_timeout: float = 1.0,
    ) -> None:
        self.name = name
        self.size = size
        self.steps = tuple(steps)
        self.delay = delay
        self.init_delay = init_delay
        self.error = error
        self.init_timeout = init_timeout
        self.exec_timeout = exec_timeout
        self.calls = 0
        self.closed = 0

    async def initialize(self) -> None:
        if self.init_delay:
            await asyncio.sleep(self.init_delay)

    async def convert(self, input_path: Path, output_path: Path, progress) -> ConversionResult:
        self.calls += 1
        for step in self.steps:
            progress(step, f"{self.name} at {step}%")
            await asyncio.sleep(0)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        output_path.write_bytes(PSD_MAGIC + b"\0" * max(0, self.size - len(PSD_MAGIC)))
        return ConversionResult(True, output_path, self.size, {"source": self.name})

    async def close(self) -> None:
        self.closed += 1


class ThreadedStrategy(FakeStrategy):
    """Does its work in a worker thread and reports progress from there."""

    def __init__(self, name: str, **kwargs) -> None:
        super().__init__(name, **kwargs)
        self.worker_threads: List[int] = []

    async def convert(self, input_path: Path, output_path: Path, progress) -> ConversionResult:
        return await asyncio.to_thread(self._work, output_path, progress)

    def _work(self, output_path: Path, progress) -> ConversionResult:
        self.calls += 1
        self.worker_threads.append(threading.get_ident())
        for step in self.steps:
            progress(step, f"{self.name} at {step}%")
            time.sleep(0.001)
        output_path.write_bytes(PSD_MAGIC + b"\0" * (self.size - len(PSD_MAGIC)))
        return ConversionResult(True, output_path, self.size, {"source": self.name})


class ChainRecorder:
    """Chain factory over fixed strategies that remembers the ``enhanced`` flag of each job."""

    def __init__(self, *strategies: ConversionStrategy, min_output_bytes: int = 1024) -> None:
        self.strategies = list(strategies)
        self.min_output_bytes = min_output_bytes
        self.enhanced_calls: List[bool] = []

    def __call__(self, enhanced: bool) -> StrategyChain:
        self.enhanced_calls.append(enhanced)
        return StrategyChain(self.strategies, min_output_bytes=self.min_output_bytes)


class ProgressLog:
    """Progress callback recording every report."""

    def __init__(self) -> None:
        self.values: List[int] = []
        self.messages: List[str] = []

    def __call__(self, progress: int, message: str) -> None:
        self.values.append(progress)
        self.messages.append(message)

    @property
    def is_monotonic(self) -> bool:
        return all(a <= b for a, b in zip(self.values, self.values[1:]))


def provision_user(client, admin_headers, plan: str = "free", conversions_left: Optional[int] = None, email: Optional[str] = None):
    """Create a user through the admin API; returns (auth headers, user record)."""
    payload = {"email": email or f"user-{time.monotonic_ns()}@example.com", "plan": plan}
    if conversions_left is not None:
        payload["conversions_left"] = conversions_left
    response = client.post("/admin/users", json=payload, headers=admin_headers)
    assert response.status_code == 201, response.text
    data = response.json()
    return {"X-API-Key": data["api_key"]}, data["record"]


def upload_pdf(client, data: bytes, filename: str = "poster.pdf", content_type: str = "application/pdf"):
    return client.post("/api/upload", files={"pdf": (filename, BytesIO(data), content_type)})


def wait_for_terminal(client, job_id: str, timeout: float = 5.0) -> dict:
    """Poll the status endpoint until the job completes or fails."""
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f"/api/job/{job_id}")
        assert response.status_code == 200, response.text
        data = response.json()
        if data["status"] in ("completed", "error"):
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"Job {job_id} still {data['status']} after {timeout}s")
        time.sleep(0.02)
