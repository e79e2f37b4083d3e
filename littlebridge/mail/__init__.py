"""Email provider configuration utilities."""

from .config import EmailConfig, load_email_config
from .providers import (
    DevPrintProvider,
    EmailProvider,
    ResendProvider,
    SMTPProvider,
    create_email_provider,
)
from .renderer import render_subject_body

__all__ = [
    "DevPrintProvider",
    "EmailConfig",
    "EmailProvider",
    "ResendProvider",
    "SMTPProvider",
    "create_email_provider",
    "load_email_config",
    "render_subject_body",
]
