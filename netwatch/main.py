"""
Entrypoint module for uvicorn.

Run as:

    uvicorn netwatch.main:app
"""

from netwatch.api import app  # noqa: F401  (FastAPI app)
