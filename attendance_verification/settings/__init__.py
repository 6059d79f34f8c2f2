"""Development and test settings. Use ``settings.production`` for deployments."""

from .base import *  # noqa: F401,F403
