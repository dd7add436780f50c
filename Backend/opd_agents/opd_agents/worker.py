# opd_agents/worker.py
from __future__ import annotations

import logging
import os
import signal
import time
from datetime import datetime
from typing import Dict, Optional

from . import config as _config
from .db import get_conn, safe_close, safe_rollback
from .gateway import WhatsAppGateway
from .pharmacy import sweep_stock_alerts
from .queue_processor import ProcessResult, QueueProcessor
from .store import Stores
from .utils import now_dt

logger = logging.getLogger("opd_agents.worker")


def _int_env_any(names: list[str], default: int) -> int:
    for n in names:
        v = os.environ.get(n)
        if v is None:
            continue
        try:
            return int(v)
        except ValueError:
            continue
    return default


def _log(worker_id: str, msg: str, level: int = logging.INFO) -> None:
    logger.log(level, "[worker:%s] %s", worker_id, msg)


def _end_snapshot(stores: Stores) -> None:
    # autocommit is off: a tick that only reads would otherwise keep its
    # REPEATABLE READ snapshot and never see rows queued by other sessions
    if stores.conn is not None:
        safe_rollback(stores.conn)


def run_queue_tick(
    stores: Stores,
    processor: QueueProcessor,
    *,
    worker_id: str,
    lock_ttl: Optional[int] = None,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, ProcessResult]:
    """Run one pass for every clinic with due messages, one processor per clinic at a time."""
    _end_snapshot(stores)
    now = now or now_dt()
    lock_ttl = lock_ttl or processor.lock_ttl()
    results: Dict[str, ProcessResult] = {}

    try:
        for clinic_id in stores.queue.clinics_with_due_messages(now, processor.max_retries):
            lock_key = f"whatsapp_queue:{clinic_id}"
            if not stores.locks.claim(lock_key, lock_ttl, worker_id):
                _log(worker_id, f"SKIP clinic={clinic_id} (queue locked elsewhere)")
                continue
            try:
                results[clinic_id] = processor.process_pending(clinic_id, user_id=user_id)
            finally:
                stores.locks.release(lock_key, worker_id)
    finally:
        _end_snapshot(stores)

    return results


def run_pharmacy_sweep(
    stores: Stores,
    *,
    worker_id: str,
    horizon_days: int = _config.EXPIRY_HORIZON_DAYS,
    interval_min: int = _config.PHARMACY_SWEEP_INTERVAL_MIN,
    now: Optional[datetime] = None,
) -> Dict[str, Dict[str, int]]:
    _end_snapshot(stores)
    now = now or now_dt()
    out: Dict[str, Dict[str, int]] = {}
    bucket = now.strftime("%Y-%m-%d-%H")  # hourly dedupe key

    try:
        for clinic_id in stores.medicines.clinic_ids():
            # never released: the lock expiring is what allows the next sweep
            if not stores.locks.claim(f"pharmacy_sweep:{clinic_id}:{bucket}", max(60, interval_min * 60), worker_id):
                continue
            out[clinic_id] = sweep_stock_alerts(
                stores.medicines, stores.alerts, clinic_id, today=now.date(), horizon_days=horizon_days
            )
    finally:
        _end_snapshot(stores)
    return out


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    worker_id = os.environ.get("WORKER_ID") or _config.WORKER_ID
    poll_sec = _int_env_any(["QUEUE_POLL_SECONDS", "POLL_SECONDS"], _config.QUEUE_POLL_SECONDS)
    sweep_interval_min = _int_env_any(["PHARMACY_SWEEP_INTERVAL_MIN"], _config.PHARMACY_SWEEP_INTERVAL_MIN)
    sender_user_id = _config.WHATSAPP_SENDER_USER_ID or None

    stopping = {"flag": False}

    def _stop(signum, _frame):
        _log(worker_id, f"signal {signum} received, stopping after current tick")
        stopping["flag"] = True

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    try:
        conn = get_conn()
    except Exception as e:
        _log(worker_id, f"FATAL: cannot connect to DB: {e}", logging.CRITICAL)
        raise

    stores = Stores.for_conn(conn)
    processor = QueueProcessor(stores.queue, stores.log, WhatsAppGateway())
    _log(worker_id, f"started poll={poll_sec}s batch={processor.batch_size} max_retries={processor.max_retries}")

    last_queue = 0.0
    last_sweep = 0.0
    try:
        while not stopping["flag"]:
            now_t = time.time()
            # no stuck tx from the prior loop
            safe_rollback(conn)

            if now_t - last_queue >= poll_sec:
                last_queue = now_t
                try:
                    results = run_queue_tick(stores, processor, worker_id=worker_id, user_id=sender_user_id)
                    sent = sum(r.sent for r in results.values())
                    _log(worker_id, f"queue tick clinics={len(results)} sent={sent}")
                except Exception:
                    safe_rollback(conn)
                    logger.exception("[worker:%s] queue tick failed", worker_id)

            if now_t - last_sweep >= max(60, sweep_interval_min * 60):
                last_sweep = now_t
                try:
                    run_pharmacy_sweep(stores, worker_id=worker_id, interval_min=sweep_interval_min)
                except Exception:
                    safe_rollback(conn)
                    logger.exception("[worker:%s] pharmacy sweep failed", worker_id)

            time.sleep(1.0)
    finally:
        _log(worker_id, "stopped")
        safe_close(conn)


if __name__ == "__main__":
    main()
