"""
SmartMail - batch classification and labeling for Gmail.

    from smartmail.main import build_orchestrator
    orchestrator = build_orchestrator(load_config())
"""

from .__version__ import __version__

__all__ = ["__version__"]
