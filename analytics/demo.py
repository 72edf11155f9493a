from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

import numpy as np
import pandas as pd

from analytics.normalize import month_bucket
from analytics.records import ApprovalRecord, TicketRecord, approval_to_frame, tickets_to_frame

STATUSES = ["Open", "Closed", "In Progress"]
PRIORITIES = ["High", "Medium", "Low"]
TYPES = [
    "Hardware Repair",
    "Software Update",
    "Network Issue",
    "Electrical",
    "Air Conditioning",
    "Security System",
    "Plumbing",
    "General Maintenance",
]
PHASES = ["Phase 1", "Phase 2", "Phase 3", "Phase 4", "Phase 5"]
STATES = ["Selangor", "Kuala Lumpur", "Johor", "Penang", "Sarawak", "Sabah", "Perak", "Pahang"]
NADIS = ["NADI Centrum", "NADI Taman", "NADI Komuniti", "NADI Bandar", "NADI Desa"]
TPS = ["TP Alpha", "TP Beta", "TP Gamma", "TP Delta"]
DUSPS = ["DUSP One", "DUSP Two", "DUSP Three", "DUSP Four"]
REQUESTERS = ["Ahmad Razak", "Siti Nurhaliza", "John Tan", "Mary Lee", "Raj Kumar", "Nurul Aina"]
DESCRIPTIONS = [
    "Equipment malfunction requiring immediate attention",
    "Routine maintenance check and servicing",
    "System upgrade and configuration update",
    "Preventive maintenance scheduled work",
    "Emergency repair due to component failure",
    "Performance optimization and tuning",
]


def generate_demo_tickets(count: int = 250, *, seed: int = 7, now: Optional[datetime] = None) -> List[TicketRecord]:
    """Placeholder tickets spread over the trailing year, shown when no real source is reachable."""
    rng = np.random.default_rng(seed)
    now = (now or datetime.now()).replace(microsecond=0)

    def pick(options: List[str]) -> str:
        return options[int(rng.integers(0, len(options)))]

    records: List[TicketRecord] = []
    for i in range(count):
        registered = now - timedelta(seconds=float(rng.random()) * 365 * 24 * 3600)
        updated = registered + timedelta(seconds=float(rng.random()) * 30 * 24 * 3600)
        registered = registered.replace(microsecond=0)
        updated = updated.replace(microsecond=0)
        records.append(
            TicketRecord(
                title=f"Maintenance ticket {i + 1}",
                maintenance_description=pick(DESCRIPTIONS),
                refid_mcmc=f"MCMC-{i + 1:05d}",
                nadi=pick(NADIS),
                state=pick(STATES),
                tp=pick(TPS),
                dusp=pick(DUSPS),
                status=pick(STATUSES),
                requester=pick(REQUESTERS),
                maintenance_type=pick(TYPES),
                phase=pick(PHASES),
                priority=pick(PRIORITIES),
                registered_date=registered.isoformat(),
                updated_date=updated.isoformat(),
                registered_date_parsed=registered,
                updated_date_parsed=updated,
                registered_month=month_bucket(registered),
            )
        )
    return records


def demo_ticket_frame(count: int = 250, *, seed: int = 7, now: Optional[datetime] = None) -> pd.DataFrame:
    return tickets_to_frame(generate_demo_tickets(count, seed=seed, now=now))


APPROVAL_STATUSES = ["Request Approval", "Submitted", "Pending", "Approved"]
APPROVAL_SITES = ["Site Alpha", "Site Beta", "Site Gamma", "Site Delta", "Site Epsilon"]


def generate_demo_approvals(count: int = 200, *, seed: int = 11) -> List[ApprovalRecord]:
    rng = np.random.default_rng(seed)

    def pick(options: List[str]) -> str:
        return options[int(rng.integers(0, len(options)))]

    return [
        ApprovalRecord(
            event_status_name=pick(APPROVAL_STATUSES),
            site_profile_name_tp=pick(APPROVAL_SITES),
            sso_name=pick(REQUESTERS),
        )
        for _ in range(count)
    ]


def demo_approval_frame(count: int = 200, *, seed: int = 11) -> pd.DataFrame:
    return approval_to_frame(generate_demo_approvals(count, seed=seed))
