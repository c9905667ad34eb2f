from loguru import logger

from swe_worker.memory.sessions import SessionStore
from swe_worker.models import AgentStatus, InstanceStatus
from swe_worker.notifications import Notifier


async def update_agent_status(
    sessions: SessionStore,
    notifier: Notifier,
    session_id: str,
    status: AgentStatus,
) -> None:
    await sessions.update_status(session_id, status)
    await notifier.send_webapp_event(session_id, {"type": "agentStatusUpdate", "status": status})


async def update_instance_status(
    sessions: SessionStore,
    notifier: Notifier,
    session_id: str,
    status: InstanceStatus,
) -> None:
    """Best effort: failures are logged, never raised."""
    try:
        await sessions.update_instance_status(session_id, status)
        await notifier.send_webapp_event(session_id, {"type": "instanceStatusChanged", "status": status})
        logger.info(f"Instance status of {session_id} changed to {status}")
    except Exception as ex:
        logger.error(f"Error updating instance status of {session_id} to {status}: {ex}")
