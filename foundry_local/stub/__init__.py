"""In-process stand-in for the local inference service."""

from foundry_local.stub.app import create_app

__all__ = ["create_app"]
