"""Prometheus metrics server for kryten-mana.

Subclasses BaseMetricsServer from kryten-py to expose
ledger-specific metrics and health details.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from kryten import BaseMetricsServer

if TYPE_CHECKING:
    from .main import ManaApp


class ManaMetricsServer(BaseMetricsServer):
    """Mana-specific Prometheus metrics endpoint."""

    def __init__(self, app: ManaApp, port: int = 28287) -> None:
        super().__init__(
            service_name="mana",
            port=port,
            client=app.client,
            logger=app.logger,
        )
        self._app = app

    async def _collect_custom_metrics(self) -> list[str]:
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"mana_events_processed_total {self._app.events_processed}")
        activity = self._app.activity
        if activity:
            lines.append(f"mana_logins_processed_total {activity.logins_processed}")
            lines.append(f"mana_rewards_granted_total {activity.rewards_granted}")
            lines.append(f"mana_rewards_withheld_total {activity.rewards_withheld}")
            lines.append(f"mana_rewards_lost_total {activity.rewards_lost}")
            lines.append(f"mana_granted_total {activity.mana_granted}")
        if self._app.scheduler:
            lines.append(f"mana_units_decayed_total {self._app.scheduler.units_decayed}")

        # ── Ledger gauges ────────────────────────────────────
        totals = await self._app.db.get_totals()
        lines.append(f"mana_owners {totals['owners']}")
        lines.append(f"mana_units {totals['units']}")
        lines.append(f"mana_in_circulation {totals['mana']}")
        lines.append(f"mana_transfer_log_entries {totals['transfers']}")
        lines.append(f"mana_use_log_entries {totals['uses']}")
        lines.append(f"mana_active_streaks {totals['active_streaks']}")
        return lines

    async def _get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        return {
            "database": "connected" if self._app.db else "disconnected",
            "channels_configured": len(self._app.config.channels),
            "decay_enabled": self._app.config.decay.enabled,
        }
