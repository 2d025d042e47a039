"""CRUD operations package.

- counters.py: usage counter rows (user and device scope)
- jobs.py: PDF job ledger entries
- profiles.py: plan lookup
"""

from offerquota.app.db.crud.counters import (
    CounterRow,
    CounterState,
    UsageSubject,
    apply_decrement,
    apply_increment,
    ensure_counter,
    list_counter_users,
    list_device_counters,
    load_counter,
)
from offerquota.app.db.crud.jobs import (
    count_completed_jobs,
    count_pending_jobs,
    create_pending_job,
    update_job_status,
)
from offerquota.app.db.crud.profiles import (
    PlanInfo,
    device_limit,
    get_plan,
    normalize_plan,
    plan_limit,
)

__all__ = [
    # Counters
    "CounterRow",
    "CounterState",
    "UsageSubject",
    "apply_decrement",
    "apply_increment",
    "ensure_counter",
    "list_counter_users",
    "list_device_counters",
    "load_counter",
    # Jobs
    "count_completed_jobs",
    "count_pending_jobs",
    "create_pending_job",
    "update_job_status",
    # Profiles
    "PlanInfo",
    "device_limit",
    "get_plan",
    "normalize_plan",
    "plan_limit",
]
