"""Wallet collaborators."""

from __future__ import annotations

from freepilot.services.base import StageContext


class NoopWalletService:
    """Wallet check that always passes; used when payments are not configured."""

    def check(self, context: StageContext) -> None:
        context.job_logger.info("Wallet check skipped: no wallet configured")
