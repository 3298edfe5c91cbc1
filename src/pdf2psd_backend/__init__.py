"""
PDF to PSD Converter Backend - asynchronous conversion job service

This package provides a FastAPI-based web service that converts uploaded PDF
documents into layered-image PSD files. It enables:

- PDF uploads with type and size validation
- Plan-based quota admission before any conversion work starts
- Asynchronous conversion through an ordered chain of strategies with
  per-strategy timeouts and fallback
- Live progress over WebSocket and status polling over HTTP
- Scheduled retention cleanup of finished jobs and their files

Key Components:
    - main: FastAPI application factory and HTTP/WebSocket endpoints
    - job_manager: Job lifecycle orchestration
    - job_store: Thread-safe in-memory job registry
    - strategy_chain / strategies: Ordered conversion backends
    - broadcaster: Per-job progress publish/subscribe
    - quota / user_store: Plans, allowances and API keys
    - janitor: Periodic retention sweep
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn pdf2psd_backend.main:create_app --factory --host 0.0.0.0 --port 8000
"""
