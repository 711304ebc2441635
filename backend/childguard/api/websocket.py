"""
ChildGuard - WebSocket Handlers

Real-time bidirectional communication for:
- Streaming a child's mood log entries and alerts to guardian dashboards
- Receiving transcripts, SOS signals and control messages from the child's device

Architecture:
    All processing flows through the SessionCoordinator, ensuring:
    - Per-child FIFO ordering shared with the REST ingestion path
    - One escalation policy for every channel
    - Subscriptions removed from the event bus when the socket closes

Protocol (guardian, /ws/guardian/{child_id}):
    Server → Client:
        {"type": "connected", "guardian_session_id": "...", "child_id": "..."}
        {"type": "history", "data": {"mood_logs": [...], "alerts": [...]}}
        {"type": "mood_log", "sequence": n, "data": {...}}
        {"type": "alert", "sequence": n, "data": {...}}
        {"type": "pong"}
    Client → Server:
        {"type": "ping"}

    The subscription is opened before history is loaded, so an event
    recorded in between may appear in both; dashboards de-duplicate on
    timestamp (delivery is at-least-once).

Protocol (child device, /ws/child/{child_id}):
    Client → Server:
        {"type": "transcript", "data": {"text": "..."}}
        {"type": "sos", "data": {"latitude": 37.4, "longitude": -122.1}}
        {"type": "control", "action": "stop"}
    Server → Client:
        {"type": "connected", "child_id": "..."}
        {"type": "ack", "message": "Transcript queued"}
        {"type": "result", "data": {...}}
        {"type": "sos_sent", "data": {...}}
        {"type": "status", "message": "..."}
        {"type": "error", "code": "...", "message": "..."}
"""

import asyncio
import json
import logging
import uuid
from typing import Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from childguard.core.coordinator import SessionCoordinator
from childguard.core.event_bus import Subscription
from childguard.core.exceptions import ChildGuardError, InvalidMessageError
from childguard.core.logging import LogContext
from childguard.core.types import ChildId, GuardianSessionId, Transcript
from childguard.services.location import provider_from_report

from .routes import alert_to_schema, outcome_to_schema

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


def _error_message(error: Exception) -> dict:
    if isinstance(error, ChildGuardError):
        return {"type": "error", "code": error.code, "message": error.message}
    return {"type": "error", "code": "INTERNAL_ERROR", "message": "Processing failed"}


# =============================================================================
# Guardian Endpoint
# =============================================================================

@router.websocket("/ws/guardian/{child_id}")
async def guardian_stream(websocket: WebSocket, child_id: str):
    """
    Live event stream of one child for a guardian dashboard.

    Sends history first, then every mood log entry and alert recorded while
    connected. Disconnecting closes the subscription.
    """
    coordinator: SessionCoordinator = websocket.app.state.coordinator
    guardian_session_id = GuardianSessionId(
        websocket.query_params.get("guardian_session_id") or f"gs_{uuid.uuid4().hex[:12]}"
    )

    await websocket.accept()

    with LogContext(child_id=child_id, guardian_session=guardian_session_id):
        subscription = coordinator.subscribe(ChildId(child_id), guardian_session_id)
        logger.info("Guardian connected: child=%s...", child_id[:8])

        forward_task = None
        receive_task = None
        try:
            await websocket.send_json({
                "type": "connected",
                "guardian_session_id": guardian_session_id,
                "child_id": child_id,
            })

            history = await coordinator.load_history(ChildId(child_id))
            await websocket.send_json({"type": "history", "data": history.to_dict()})

            forward_task = asyncio.create_task(_forward_events(websocket, subscription))
            receive_task = asyncio.create_task(_receive_guardian_messages(websocket))

            done, _ = await asyncio.wait(
                {forward_task, receive_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, WebSocketDisconnect):
                    raise error

        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("Guardian stream error: %s", e, exc_info=True)
        finally:
            for task in (forward_task, receive_task):
                if task is not None and not task.done():
                    task.cancel()
            coordinator.disconnect_guardian(guardian_session_id)
            logger.info("Guardian disconnected: child=%s...", child_id[:8])


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    """Push bus events to the socket in publish order."""
    async for event in subscription:
        await websocket.send_json(event.to_message())


async def _receive_guardian_messages(websocket: WebSocket) -> None:
    """Read client frames until disconnect; answers pings."""
    while True:
        raw = await websocket.receive_text()
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            message = None
        if not isinstance(message, dict):
            await websocket.send_json({"type": "error", "code": InvalidMessageError.code, "message": "Invalid JSON format"})
            continue
        if message.get("type") == "ping":
            await websocket.send_json({"type": "pong"})


# =============================================================================
# Child Device Endpoint
# =============================================================================

@router.websocket("/ws/child/{child_id}")
async def child_stream(websocket: WebSocket, child_id: str):
    """
    Ingestion channel for a child's device.

    Transcripts are queued on the child's FIFO and acknowledged immediately;
    each outcome is reported back when processed. Closing the socket stops
    the recording session.
    """
    coordinator: SessionCoordinator = websocket.app.state.coordinator
    pending: Set[asyncio.Task] = set()

    await websocket.accept()

    with LogContext(child_id=child_id):
        logger.info("Child device connected: child=%s...", child_id[:8])
        try:
            await websocket.send_json({"type": "connected", "child_id": child_id})

            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                    if not isinstance(message, dict):
                        raise InvalidMessageError("Message must be a JSON object")
                except (json.JSONDecodeError, InvalidMessageError):
                    logger.warning("Invalid JSON in child message")
                    await websocket.send_json({
                        "type": "error",
                        "code": InvalidMessageError.code,
                        "message": "Invalid JSON format",
                    })
                    continue

                msg_type = message.get("type", "unknown")

                if msg_type == "transcript":
                    await handle_transcript(websocket, coordinator, child_id, message, pending)
                elif msg_type == "sos":
                    await handle_sos(websocket, coordinator, child_id, message)
                elif msg_type == "control":
                    await handle_control(websocket, coordinator, child_id, message)
                else:
                    logger.warning("Unknown message type: %s", msg_type)
                    await websocket.send_json({
                        "type": "error",
                        "code": InvalidMessageError.code,
                        "message": f"Unknown message type: {msg_type}",
                    })

        except WebSocketDisconnect:
            logger.info("Child device disconnected: child=%s...", child_id[:8])
        except Exception as e:
            logger.error("Child stream error: %s", e, exc_info=True)
        finally:
            await coordinator.stop_session(ChildId(child_id))


async def handle_transcript(
    websocket: WebSocket,
    coordinator: SessionCoordinator,
    child_id: str,
    message: dict,
    pending: Set[asyncio.Task],
) -> None:
    """Queue a transcript and report its outcome asynchronously."""
    data = message.get("data")
    text = str(data.get("text") or "") if isinstance(data, dict) else ""
    try:
        future = await coordinator.submit(Transcript(child_id=ChildId(child_id), text=text))
    except ChildGuardError as e:
        await websocket.send_json(_error_message(e))
        return

    await websocket.send_json({"type": "ack", "message": "Transcript queued"})

    task = asyncio.create_task(_report_outcome(websocket, future))
    pending.add(task)
    task.add_done_callback(pending.discard)


async def _report_outcome(websocket: WebSocket, future: asyncio.Future) -> None:
    try:
        outcome = await future
        reply = {"type": "result", "data": outcome_to_schema(outcome).model_dump(mode="json")}
    except ChildGuardError as e:
        reply = _error_message(e)

    try:
        await websocket.send_json(reply)
    except (WebSocketDisconnect, RuntimeError) as e:
        # Outcome is already recorded and published; only the device reply is lost.
        logger.debug("Could not report outcome to child device: %s", e)


async def handle_sos(
    websocket: WebSocket,
    coordinator: SessionCoordinator,
    child_id: str,
    message: dict,
) -> None:
    """Raise an SOS with the coordinates the device reported, if any."""
    data = message.get("data")
    if not isinstance(data, dict):
        data = {}
    try:
        provider = provider_from_report(data.get("latitude"), data.get("longitude"))
        alert = await coordinator.trigger_sos(ChildId(child_id), provider)
    except ChildGuardError as e:
        await websocket.send_json(_error_message(e))
        return

    await websocket.send_json({
        "type": "sos_sent",
        "data": alert_to_schema(alert).model_dump(mode="json"),
    })


async def handle_control(
    websocket: WebSocket,
    coordinator: SessionCoordinator,
    child_id: str,
    control: dict,
) -> None:
    """Handle control messages from the child's device."""
    action = control.get("action")

    if action == "stop":
        discarded = await coordinator.stop_session(ChildId(child_id))
        await websocket.send_json({
            "type": "status",
            "message": "Recording stopped",
            "discarded": discarded,
        })
    else:
        logger.warning("Unknown control action: %s", action)
        await websocket.send_json({
            "type": "error",
            "code": InvalidMessageError.code,
            "message": f"Unknown control action: {action}",
        })
