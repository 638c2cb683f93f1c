# SealVault - API Module
# FastAPI application for the vault sync server

from .main import create_app, start_api_server

__all__ = ["create_app", "start_api_server"]
