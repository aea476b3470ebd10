# mayday/bootstrap.py
"""
Composition root: wires rule table, repositories, carriers and workers
from settings.
"""
from __future__ import annotations

from dataclasses import dataclass

from mayday.config import Settings, settings
from mayday.core.dispatch.expiry import DispatchExpirySweeper
from mayday.core.dispatch.orchestrator import DispatchOrchestrator
from mayday.core.law.engine import LawTriggerEngine
from mayday.core.law.table import RuleTable, load_rule_table
from mayday.core.notifications.delivery import DeliveryManager
from mayday.core.notifications.retry_worker import NotificationRetryWorker
from mayday.infra.carriers import build_carrier
from mayday.infra.logging_config import get_logger
from mayday.infra.pg_dispatch_repo_async import get_dispatch_repo, get_police_log
from mayday.infra.pg_notification_repo_async import get_notification_repo
from mayday.infra.pg_rule_table_async import AsyncPostgresRuleTable

logger = get_logger(__name__)


@dataclass
class Services:
    engine: LawTriggerEngine
    delivery: DeliveryManager
    orchestrator: DispatchOrchestrator
    retry_worker: NotificationRetryWorker
    expiry_sweeper: DispatchExpirySweeper


def build_rule_table(s: Settings = settings) -> RuleTable:
    if s.rule_table_source == "postgres":
        logger.info("Law rules: postgres (law_rules table)")
        return AsyncPostgresRuleTable()
    return load_rule_table(s.rule_table_path)


def build_services(s: Settings = settings) -> Services:
    engine = LawTriggerEngine(build_rule_table(s))
    dispatch_repo = get_dispatch_repo()
    notification_repo = get_notification_repo()

    delivery = DeliveryManager(notification_repo, build_carrier(s))
    orchestrator = DispatchOrchestrator(
        engine,
        dispatch_repo,
        notification_repo,
        delivery,
        get_police_log() if s.police_notifications_enabled else None,
        base_url=s.dispatch_base_url,
        default_sla_minutes=s.default_sla_minutes,
    )
    retry_worker = NotificationRetryWorker(
        notification_repo,
        delivery,
        poll_interval=s.retry_worker_poll_interval,
        batch_size=s.retry_worker_batch_size,
        stale_timeout=s.retry_worker_stale_timeout,
    )
    expiry_sweeper = DispatchExpirySweeper(dispatch_repo, interval=s.expiry_sweeper_interval)

    return Services(
        engine=engine,
        delivery=delivery,
        orchestrator=orchestrator,
        retry_worker=retry_worker,
        expiry_sweeper=expiry_sweeper,
    )
