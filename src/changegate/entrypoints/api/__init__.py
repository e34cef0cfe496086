"""FastAPI application exposing the change gate service."""
