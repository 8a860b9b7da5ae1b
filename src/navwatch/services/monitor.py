"""
mNAV threshold monitor.

Each run loads the active alert rules, computes mNAV once per company and
fires the rules whose condition holds and whose cooldown has elapsed. The
cooldown is recomputed from last_triggered_at on every run; there is no
stored "cooling" state. The store's record_trigger re-checks the cooldown
inside its transaction, so overlapping runs cannot both fire the same rule.
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from navwatch.clients.notifier import Notifier
from navwatch.core.errors import InvalidNav, MnavError, StoreWriteFailure
from navwatch.core.models import AlertRule, CompanyCheckResult, MonitorStatus, NotificationRecord
from navwatch.core.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(hours=6)


def condition_met(rule: AlertRule, current_mnav: float) -> bool:
    """Strict comparison: a value equal to the threshold never fires."""
    if rule.direction == "below":
        return current_mnav < rule.threshold_value
    if rule.direction == "above":
        return current_mnav > rule.threshold_value
    return False


class AlertMonitor:

    def __init__(
        self,
        store,
        nav_service,
        notifier: Optional[Notifier] = None,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        max_concurrency: int = 4,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.nav_service = nav_service
        self.notifier = notifier
        self.cooldown = cooldown
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._last_check: Optional[datetime] = None

    def cooldown_elapsed(self, rule: AlertRule, now: datetime) -> bool:
        if rule.last_triggered_at is None:
            return True
        return now - rule.last_triggered_at > self.cooldown

    async def run_once(self, now: Optional[datetime] = None) -> List[CompanyCheckResult]:
        """Evaluate every active rule once. A failing company never stops the others."""
        now = now or self._clock()
        rules = await self.store.list_active_rules()
        if not rules:
            logger.info("No active alerts to check")
            self._last_check = now
            return []

        groups: Dict[str, List[AlertRule]] = OrderedDict()
        for rule in rules:
            groups.setdefault(rule.company_id, []).append(rule)
        logger.info("Checking %d active alerts across %d companies", len(rules), len(groups))

        results = await asyncio.gather(
            *(self._check_company(company_id, company_rules, now) for company_id, company_rules in groups.items())
        )

        fired = sum(len(r.triggered) for r in results)
        failed = sum(1 for r in results if r.error)
        logger.info(
            "MNAV monitoring check completed: %d companies, %d alerts triggered, %d companies skipped",
            len(results), fired, failed,
        )
        self._last_check = now
        return list(results)

    async def _check_company(self, company_id: str, rules: List[AlertRule], now: datetime) -> CompanyCheckResult:
        async with self._semaphore:
            try:
                current_mnav = await self.nav_service.current_mnav(company_id)
            except InvalidNav as e:
                logger.error("Invalid NAV for company %s, skipping %d alerts: %s", company_id, len(rules), e)
                return CompanyCheckResult(company_id=company_id, error=f"{type(e).__name__}: {e}")
            except MnavError as e:
                logger.warning("Could not calculate MNAV for company %s, skipping %d alerts: %s", company_id, len(rules), e)
                return CompanyCheckResult(company_id=company_id, error=f"{type(e).__name__}: {e}")
            except Exception as e:
                logger.exception("Unexpected error calculating MNAV for company %s", company_id)
                return CompanyCheckResult(company_id=company_id, error=f"{type(e).__name__}: {e}")

            result = CompanyCheckResult(company_id=company_id, current_mnav=current_mnav)
            for rule in rules:
                if not condition_met(rule, current_mnav) or not self.cooldown_elapsed(rule, now):
                    continue
                try:
                    record = await self._trigger(rule, current_mnav, now)
                except Exception as e:
                    # triggers already committed for this company stay in the result
                    logger.exception("Unexpected error triggering alert %s", rule.id)
                    result.error = f"{type(e).__name__}: {e}"
                    break
                if record is not None:
                    result.triggered.append(record)

        if result.triggered:
            logger.info(
                "Triggered %d alerts for company %s (MNAV: %.4f)", len(result.triggered), company_id, current_mnav
            )
        return result

    async def _trigger(self, rule: AlertRule, current_mnav: float, now: datetime) -> Optional[NotificationRecord]:
        try:
            record = await self.store.record_trigger(rule, current_mnav, now, cutoff=now - self.cooldown)
        except StoreWriteFailure as e:
            # nothing was written; the next scheduled run retries
            logger.error("Could not record trigger for alert %s: %s", rule.id, e)
            return None
        if record is None:
            logger.info("Alert %s already triggered within its cooldown by another run", rule.id)
            return None

        logger.info(
            "Alert triggered for %s: MNAV %.4f %s %s",
            rule.company_ticker or rule.company_id, current_mnav, rule.direction, rule.threshold_value,
        )
        await self._deliver(record, rule)
        return record

    async def _deliver(self, record: NotificationRecord, rule: AlertRule) -> None:
        if self.notifier is None:
            return
        try:
            delivered = await self.notifier.send(record, rule)
            if not delivered:
                logger.warning("Delivery failed for notification %s; the record stays unsent", record.id)
                return
            if self.notifier.channel:
                await self.store.mark_channel_sent(record.id, self.notifier.channel)
                setattr(record, f"{self.notifier.channel}_sent", True)
        except Exception:
            # the trigger is committed; only the delivery flag is lost
            logger.exception("Delivery error for notification %s", record.id)

    async def status(self) -> MonitorStatus:
        now = self._clock()
        active, recent = await asyncio.gather(
            self.store.count_active_rules(),
            self.store.count_notifications_since(now - timedelta(hours=24)),
        )
        return MonitorStatus(active_alerts=active, recent_notifications=recent, last_check=self._last_check)

    async def run_forever(self, interval_seconds: float) -> None:
        """Run checks on a fixed interval until cancelled."""
        logger.info("Starting MNAV monitoring with %.0f-second intervals", interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception:
                # keep the loop alive; the next tick retries
                logger.exception("MNAV monitoring run failed")
            await asyncio.sleep(interval_seconds)
