"""Live session channels over WebSockets.

Every subscriber of a session channel receives every event published on it;
nothing is addressed to a single competitor except error replies to the
socket that caused them.
"""

import asyncio
import json
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Set

from fastapi import WebSocket
from pydantic import ValidationError

from quizroom.errors import QuizRoomError, ValidationFailure
from quizroom.ingestion import join_answer
from quizroom.models import AnswerEvent

logger = logging.getLogger(__name__)


def parse_answer(session_id: str, msg: dict) -> AnswerEvent:
    """Build the ingestion event for a newAnswer message on this channel."""
    try:
        return AnswerEvent(
            sessionId=session_id,
            userId=msg.get("userId"),
            questionId=msg.get("questionId"),
            answer=join_answer(msg.get("answer")),
            questionText=msg.get("questionText"),
        )
    except ValidationError as e:
        raise ValidationFailure(f"Malformed answer ({e.error_count()} invalid fields)")


class ConnectionManager:
    """Per-session WebSocket fan-out with a broadcast queue per channel"""

    def __init__(self, heartbeat_sec: int = 15, max_connections_per_room: int = 250):
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self.heartbeat_tasks: Dict[WebSocket, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._broadcast_queue: Dict[str, asyncio.Queue] = {}
        self._broadcast_tasks: Dict[str, asyncio.Task] = {}
        self._heartbeat_sec = heartbeat_sec
        self._max_connections_per_room = max_connections_per_room
        self._message_count: Dict[str, int] = defaultdict(int)

    async def connect(self, websocket: WebSocket, session_id: str) -> bool:
        try:
            await websocket.accept()
        except Exception as e:
            logger.error(f"Failed to accept WebSocket: {e}")
            return False

        async with self._lock:
            room = self.active_connections.get(session_id)
            if room is not None and len(room) >= self._max_connections_per_room:
                await websocket.close(code=1013, reason="Room at capacity")
                return False

            if room is None:
                self.active_connections[session_id] = set()
                self._broadcast_queue[session_id] = asyncio.Queue()
                self._broadcast_tasks[session_id] = asyncio.create_task(
                    self._broadcast_worker(session_id)
                )

            self.active_connections[session_id].add(websocket)
            self.heartbeat_tasks[websocket] = asyncio.create_task(self._heartbeat(websocket))

        logger.info(
            f"✓ Connected: {session_id} ({len(self.active_connections[session_id])} total)"
        )
        return True

    async def disconnect(self, websocket: WebSocket, session_id: str):
        async with self._lock:
            task = self.heartbeat_tasks.pop(websocket, None)
            if task:
                task.cancel()

            room = self.active_connections.get(session_id)
            if room is None:
                return
            room.discard(websocket)
            if not room:
                del self.active_connections[session_id]
                self._broadcast_queue.pop(session_id, None)
                self._message_count.pop(session_id, None)
                worker = self._broadcast_tasks.pop(session_id, None)
                if worker:
                    worker.cancel()
        logger.info(f"✗ Disconnected: {session_id}")

    async def _broadcast_worker(self, session_id: str):
        try:
            queue = self._broadcast_queue[session_id]
            while True:
                message = await queue.get()
                if message is None:
                    break
                await self._send_all(session_id, json.dumps(message))
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Broadcast worker error: {e}")

    async def _send_all(self, session_id: str, data: str):
        connections = list(self.active_connections.get(session_id, ()))
        dead_sockets = []
        await asyncio.gather(
            *(self._send_message(conn, data, dead_sockets) for conn in connections),
            return_exceptions=True,
        )
        for socket in dead_sockets:
            self.active_connections.get(session_id, set()).discard(socket)

    async def _send_message(self, conn: WebSocket, data: str, dead_sockets: list):
        try:
            await conn.send_text(data)
        except Exception:
            dead_sockets.append(conn)

    async def broadcast(self, session_id: str, event: str, payload: dict):
        """Queue an event for every subscriber of the session channel"""
        queue = self._broadcast_queue.get(session_id)
        if queue is None:
            return
        await queue.put({"type": event, "data": payload})
        self._message_count[session_id] += 1

    async def _heartbeat(self, ws: WebSocket):
        try:
            while True:
                await asyncio.sleep(self._heartbeat_sec)
                try:
                    await ws.send_json({"type": "ping", "t": int(time.time() * 1000)})
                except Exception:
                    break
        except asyncio.CancelledError:
            pass

    def get_performance_stats(self) -> dict:
        return {
            "active_rooms": len(self.active_connections),
            "total_connections": sum(len(c) for c in self.active_connections.values()),
            "messages": dict(self._message_count),
        }


class LiveEvents:
    """Dispatches inbound channel messages to the ingestion pipeline."""

    def __init__(self, manager: ConnectionManager, ingestion):
        self.manager = manager
        self.ingestion = ingestion

    async def handle(self, websocket: WebSocket, session_id: str, msg: dict):
        msg_type = msg.get("type")

        if msg_type == "joinSession":
            await self.manager.broadcast(session_id, f"newUser-{session_id}", msg)

        elif msg_type == "newAnswer":
            await self.on_new_answer(session_id, msg)

        elif msg_type == "submitQuiz":
            await self.manager.broadcast(
                session_id, f"submitQuiz-{session_id}", {"userId": msg.get("userId")}
            )

        elif msg_type == "submit_session":
            await self.on_submit_session(websocket, session_id, msg)

        elif msg_type == "ping":
            await websocket.send_json(
                {
                    "type": "pong",
                    "clientTime": msg.get("clientTime") or msg.get("t"),
                    "serverTime": int(time.time() * 1000),
                }
            )

    async def on_new_answer(self, session_id: str, msg: dict):
        """Persist a live answer and acknowledge it on the channel.

        Failures are logged and dropped; the submitter gets no signal.
        """
        try:
            event = parse_answer(session_id, msg)
            accepted = await self.ingestion.record_answer(event)
        except QuizRoomError as e:
            logger.error(f"Live answer dropped for session {session_id}: {e}")
            return
        if not accepted:
            return

        await self.manager.broadcast(
            session_id,
            f"newAnswer-{session_id}",
            {
                "userId": event.userId,
                "questionId": event.questionId,
                "questionText": event.questionText,
                "status": "success",
                "answer": msg.get("answer"),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    async def on_submit_session(self, websocket: WebSocket, session_id: str, msg: dict):
        user_id = msg.get("userId")
        try:
            await self.ingestion.finish_session(session_id, user_id)
        except QuizRoomError as e:
            logger.error(f"Error saving final answer for {user_id}: {e}")
            await websocket.send_json({"type": "error", "message": "Failed to save answer"})
            return

        await self.manager.broadcast(
            session_id,
            "answer_pack",
            {
                "userId": user_id,
                "questionId": msg.get("questionId"),
                "questionText": msg.get("questionText"),
                "status": "success",
                "answer": msg.get("answer"),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
