"""Connection status definitions and transition map.

The guardian drives every transition; the lifecycle manager validates them
against this table before anything is written.
"""

from __future__ import annotations

from carelink.models.enums import ConnectionStatus

# Transition map: {current_status: {trigger_name: next_status}}
TRANSITIONS: dict[ConnectionStatus, dict[str, ConnectionStatus]] = {
    ConnectionStatus.PENDING: {
        "accept": ConnectionStatus.ACCEPTED,
        "reject": ConnectionStatus.REJECTED,
    },
    ConnectionStatus.ACCEPTED: {
        "remove": ConnectionStatus.REMOVED,
    },
    # Terminal states
    ConnectionStatus.REJECTED: {},
    ConnectionStatus.REMOVED: {},
}

# Guardian decisions on a pending request, keyed by the resulting status
DECISION_TRIGGERS: dict[ConnectionStatus, str] = {
    ConnectionStatus.ACCEPTED: "accept",
    ConnectionStatus.REJECTED: "reject",
}

# Statuses that occupy the one-active-request-per-pair slot
ACTIVE_STATUSES: tuple[ConnectionStatus, ...] = (ConnectionStatus.PENDING, ConnectionStatus.ACCEPTED)
