"""
Codex Engine HTTP API

aiohttp endpoints for running, stopping and inspecting session prompts.
"""

from .server import create_app

__all__ = ["create_app"]
