"""HTTP surface: FastAPI app and per-client coordinator registry."""
