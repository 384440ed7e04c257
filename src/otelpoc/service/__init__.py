"""Front-Service (FastAPI)."""
