"""
Channel membership for the queue event server.

The server does not keep channel membership across a transport-level
reconnect, so the client re-asserts it after every connect and reconnect.
Membership is a pure function of (role, staff id).
"""

import asyncio
from typing import Any

from ..structured_logging.enhanced_logging_config import get_logger
from .connection_manager import ConnectionManager, LifecycleSignal

logger = get_logger(__name__)

# Channel identifiers (wire contract with the event server)
EYE_DROP_QUEUE_CHANNEL = "receptionist2"
OPHTHALMOLOGIST_QUEUE_CHANNEL = "ophthalmologist"
OPTOMETRIST_QUEUE_CHANNEL = "optometrist"
DOCTOR_CHANNEL_PREFIX = "doctor:"

RECEPTIONIST_ROLES = frozenset({"receptionist2", "receptionist-2", "receptionist-type-2"})
DOCTOR_ROLES = frozenset({"ophthalmologist", "doctor"})
OPTOMETRIST_ROLES = frozenset({"optometrist"})


def normalize_role(role: str | None) -> str:
    """Lower-case a role name and unify separators ("Receptionist_Type 2" -> "receptionist-type-2")."""
    if not role:
        return ""
    return "-".join(role.strip().lower().replace("_", " ").split())


def doctor_channel(staff_id: str) -> str:
    """Channel carrying events addressed to one doctor."""
    return f"{DOCTOR_CHANNEL_PREFIX}{staff_id}"


def compute_channels(role: str | None, staff_id: str | None) -> frozenset[str]:
    """
    Compute the channels a staff member must belong to.

    Pure and total: known roles map to a non-empty set, anything else maps
    to the empty set.

    Args:
        role: Staff type (receptionist2, ophthalmologist, doctor, optometrist)
        staff_id: Staff identifier, used for the doctor-specific channel

    Returns:
        frozenset of channel identifiers
    """
    normalized = normalize_role(role)

    if normalized in RECEPTIONIST_ROLES:
        return frozenset({EYE_DROP_QUEUE_CHANNEL, OPHTHALMOLOGIST_QUEUE_CHANNEL})

    if normalized in DOCTOR_ROLES:
        channels = {OPHTHALMOLOGIST_QUEUE_CHANNEL}
        if staff_id:
            channels.add(doctor_channel(staff_id))
        return frozenset(channels)

    if normalized in OPTOMETRIST_ROLES:
        return frozenset({OPTOMETRIST_QUEUE_CHANNEL})

    return frozenset()


def join_directive(channel: str) -> tuple[str, Any]:
    """Map a channel identifier to the (event name, payload) that joins it."""
    if channel.startswith(DOCTOR_CHANNEL_PREFIX):
        return "queue:join-doctor", channel[len(DOCTOR_CHANNEL_PREFIX) :]
    return f"queue:join-{channel}", None


def join_channels(connection: ConnectionManager, role: str | None, staff_id: str | None) -> int:
    """
    Send one join directive per channel for (role, staff_id).

    Joins are idempotent on the server, so repeating them after every
    reconnect is safe.

    Returns:
        int: Number of directives handed to the connection
    """
    channels = compute_channels(role, staff_id)
    if not channels:
        logger.info("No channels to join for role", role=role)
        return 0

    sent = 0
    for channel in sorted(channels):
        event_name, payload = join_directive(channel)
        if connection.send(event_name, payload):
            sent += 1

    logger.info("Joined queue channels", role=role, channels=sorted(channels), sent=sent)
    return sent


class ChannelMembershipController:
    """
    Keeps the connection joined to the channels of the current identity.

    attach() hooks CONNECT and RECONNECT; detach() removes exactly those
    hooks and cancels a join that has not run yet.
    """

    def __init__(self, connection: ConnectionManager, join_delay: float = 0.15) -> None:
        self._connection = connection
        self._join_delay = join_delay
        self._role: str | None = None
        self._staff_id: str | None = None
        self._attached = False
        self._pending: asyncio.TimerHandle | None = None

    @property
    def channels(self) -> frozenset[str]:
        """Channels for the attached identity."""
        return compute_channels(self._role, self._staff_id)

    @property
    def attached(self) -> bool:
        return self._attached

    @property
    def hooked(self) -> bool:
        """Whether the connection still carries this controller's hooks (disconnect() clears them)."""
        return self._attached and self._connection.has_lifecycle_listener(LifecycleSignal.CONNECT, self._on_connected)

    def reattach(self) -> None:
        """Re-register the hooks for the attached identity after the connection dropped them."""
        if self._attached and not self.hooked:
            self.attach(self._role, self._staff_id)

    def attach(self, role: str | None, staff_id: str | None) -> None:
        """
        Start maintaining membership for (role, staff_id).

        Re-attaching with a new identity replaces the previous one.
        Joins immediately when the connection is already up.
        """
        if self._attached:
            self.detach()

        self._role = role
        self._staff_id = staff_id
        self._connection.on_lifecycle(LifecycleSignal.CONNECT, self._on_connected)
        self._connection.on_lifecycle(LifecycleSignal.RECONNECT, self._on_connected)
        self._attached = True

        if self._connection.is_connected():
            self.join_now()

    def detach(self) -> None:
        """Stop maintaining membership and cancel any pending join."""
        if not self._attached:
            return

        self._connection.off_lifecycle(LifecycleSignal.CONNECT, self._on_connected)
        self._connection.off_lifecycle(LifecycleSignal.RECONNECT, self._on_connected)
        if self._pending is not None:
            self._connection.cancel_scheduled(self._pending)
            self._pending = None
        self._attached = False

    def join_now(self) -> int:
        """Send the join directives for the attached identity."""
        self._pending = None
        return join_channels(self._connection, self._role, self._staff_id)

    def _on_connected(self, *_args: Any) -> None:
        # Give the server time to register the session before joining
        if self._pending is not None:
            self._connection.cancel_scheduled(self._pending)
        self._pending = self._connection.schedule(self._join_delay, self.join_now)
