from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from time import monotonic
from typing import Any, AsyncIterator, Callable, Optional

from app.core.config import BroadcastConfig
from app.models.workflow import ViewerRole
from app.services.workflow_config import WorkflowConfigProvider
from app.services.workflow_visibility import VisibilityEngine

logger = logging.getLogger("marginalia.broadcast")

# 需要逐个订阅者做可见性过滤的事件；其余事件（心跳、阶段变更通知等）原样广播。
MESSAGE_EVENTS = {"new-message", "message-updated"}

HEARTBEAT_FRAME = ":heartbeat\n\n"


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


@dataclass(eq=False)
class Subscriber:
    conversation_id: str
    manuscript_id: Optional[str]
    user_id: Optional[str]
    user_role: Optional[str]
    viewer_role: ViewerRole
    queue: asyncio.Queue
    last_activity: float = field(default_factory=monotonic)
    closed: bool = False

    def touch(self) -> None:
        self.last_activity = monotonic()


class ConnectionRegistry:
    """
    conversation_id -> 当前在线订阅者列表。

    中文注释:
    - 进程内状态，只在事件循环线程访问；每个方法内部不跨 await，天然无交错。
    - 某个会话的订阅者全部移除后，该 key 一并删除。
    """

    def __init__(self) -> None:
        self._by_conversation: dict[str, list[Subscriber]] = {}

    def add(self, subscriber: Subscriber) -> None:
        self._by_conversation.setdefault(subscriber.conversation_id, []).append(subscriber)

    def remove(self, subscriber: Subscriber) -> None:
        subscriber.closed = True
        subs = self._by_conversation.get(subscriber.conversation_id)
        if not subs:
            return
        if subscriber in subs:
            subs.remove(subscriber)
        if not subs:
            del self._by_conversation[subscriber.conversation_id]

    def subscribers(self, conversation_id: str) -> list[Subscriber]:
        return list(self._by_conversation.get(conversation_id) or [])

    def all(self) -> list[Subscriber]:
        return [s for subs in self._by_conversation.values() for s in subs]

    def conversation_ids(self) -> list[str]:
        return list(self._by_conversation.keys())

    def count(self, conversation_id: Optional[str] = None) -> int:
        if conversation_id is not None:
            return len(self._by_conversation.get(conversation_id) or [])
        return sum(len(s) for s in self._by_conversation.values())


class Broadcaster:
    """
    会话级实时推送（SSE）。

    中文注释:
    1) new-message / message-updated：对每个订阅者重新执行静态 + 工作流可见性判断与身份遮蔽，
       看不到的订阅者不会收到任何 payload；
    2) 写入失败（连接已关闭 / 队列满）即视为死连接并移除，不影响其它订阅者，也不向发布方抛错；
    3) 周期心跳 + 失活清理；进程退出时 close_all()；
    4) relay_enabled 时每个事件另写一份到 realtime_events（带本进程 origin），API 进程轮询该表，
       把其它进程（job worker / 其它实例）的事件投递给本进程订阅者；本进程自己的事件只在本地投递一次。
    """

    def __init__(
        self,
        *,
        engine: VisibilityEngine,
        workflow_config: WorkflowConfigProvider,
        config: Optional[BroadcastConfig] = None,
        registry: Optional[ConnectionRegistry] = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.engine = engine
        self.workflow_config = workflow_config
        self.config = config or BroadcastConfig.from_env()
        self.registry = registry or ConnectionRegistry()
        self._clock = clock
        self._tasks: list[asyncio.Task] = []
        self.origin = uuid.uuid4().hex
        self._relay_cursor: Optional[int] = None

    @property
    def repo(self) -> Any:
        return self.engine.repo

    async def subscribe(
        self,
        conversation_id: str,
        *,
        user_id: Optional[str],
        user_role: Optional[str],
        manuscript_id: Optional[str] = None,
    ) -> Subscriber:
        if manuscript_id is None:
            conversation = await self.repo.get_conversation(conversation_id)
            manuscript_id = (conversation or {}).get("manuscript_id")
        if manuscript_id:
            viewer_role = await self.engine.roles.resolve_viewer_role(user_id, user_role, str(manuscript_id))
        else:
            viewer_role = ViewerRole.PUBLIC

        subscriber = Subscriber(
            conversation_id=conversation_id,
            manuscript_id=str(manuscript_id) if manuscript_id else None,
            user_id=user_id,
            user_role=user_role,
            viewer_role=viewer_role,
            queue=asyncio.Queue(maxsize=self.config.queue_size),
            last_activity=self._clock(),
        )
        self.registry.add(subscriber)
        self._write(subscriber, format_sse({"type": "connected", "conversationId": conversation_id}))
        logger.info(
            "[SSE] subscribed conversation=%s user=%s total=%s",
            conversation_id,
            user_id or "anonymous",
            self.registry.count(conversation_id),
        )
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self.registry.remove(subscriber)

    def _write(self, subscriber: Subscriber, frame: Optional[str]) -> bool:
        if subscriber.closed:
            self.registry.remove(subscriber)
            return False
        try:
            subscriber.queue.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            logger.warning(
                "[SSE] dropping dead subscriber conversation=%s user=%s",
                subscriber.conversation_id,
                subscriber.user_id,
            )
            self.registry.remove(subscriber)
            return False

    async def broadcast(
        self,
        conversation_id: str,
        event: dict[str, Any],
        manuscript_id: Optional[str] = None,
    ) -> int:
        """
        推送事件到会话内所有订阅者（relay 开启时同时写入 realtime_events），返回本进程实际写入的订阅者数。
        """
        if self.config.relay_enabled:
            await self._publish(conversation_id, event, manuscript_id)
        return await self.deliver(conversation_id, event, manuscript_id)

    async def deliver(
        self,
        conversation_id: str,
        event: dict[str, Any],
        manuscript_id: Optional[str] = None,
    ) -> int:
        """只投递给本进程的订阅者。"""
        subscribers = self.registry.subscribers(conversation_id)
        if not subscribers:
            return 0

        message = event.get("message")
        if event.get("type") not in MESSAGE_EVENTS or not isinstance(message, dict):
            frame = format_sse(event)
            return sum(1 for s in subscribers if self._write(s, frame))

        manuscript = await self._load_manuscript(conversation_id, manuscript_id)
        if manuscript is None:
            # 找不到稿件时无法判断可见性，fail closed：只推给管理员/编辑。
            frame = format_sse(event)
            return sum(
                1
                for s in subscribers
                if s.viewer_role in {ViewerRole.ADMIN, ViewerRole.EDITOR} and self._write(s, frame)
            )

        config = await self.workflow_config.get()
        author_id = str(message.get("author_id") or "")
        author = message.get("author") or (await self.repo.get_user(author_id) if author_id else None) or {"id": author_id}
        author_role = await self.engine.roles.resolve_author_role(author_id, str(manuscript["id"])) if author_id else ViewerRole.PUBLIC

        delivered = 0
        for subscriber in subscribers:
            try:
                presented = await self.engine.present_message(
                    message,
                    manuscript=manuscript,
                    config=config,
                    viewer_id=subscriber.user_id,
                    viewer_global_role=subscriber.user_role,
                    viewer_role=subscriber.viewer_role,
                    author=author,
                    author_role=author_role,
                )
            except Exception as e:
                logger.warning("[SSE] visibility check failed, skipping subscriber (ignored): %s", e)
                continue
            if presented is None:
                continue
            if self._write(subscriber, format_sse({**event, "message": presented})):
                delivered += 1
        return delivered

    async def _load_manuscript(self, conversation_id: str, manuscript_id: Optional[str]) -> Optional[dict[str, Any]]:
        if not manuscript_id:
            conversation = await self.repo.get_conversation(conversation_id)
            manuscript_id = (conversation or {}).get("manuscript_id")
        if not manuscript_id:
            return None
        return await self.repo.get_manuscript(str(manuscript_id))

    def heartbeat(self) -> int:
        return sum(1 for s in self.registry.all() if self._write(s, HEARTBEAT_FRAME))

    def sweep_stale(self) -> int:
        cutoff = self._clock() - self.config.stale_sec
        stale = [s for s in self.registry.all() if s.last_activity < cutoff]
        for subscriber in stale:
            self._write_close(subscriber)
        if stale:
            logger.info("[SSE] swept %s stale connections", len(stale))
        return len(stale)

    def _write_close(self, subscriber: Subscriber) -> None:
        try:
            subscriber.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass
        self.registry.remove(subscriber)

    def close_all(self) -> int:
        subscribers = self.registry.all()
        for subscriber in subscribers:
            self._write_close(subscriber)
        logger.info("[SSE] closed %s connections", len(subscribers))
        return len(subscribers)

    async def stream(self, subscriber: Subscriber) -> AsyncIterator[str]:
        """
        StreamingResponse 的数据源；队列中的 None 表示服务端主动关闭。
        """
        try:
            while True:
                frame = await subscriber.queue.get()
                if frame is None:
                    break
                subscriber.touch()
                yield frame
        finally:
            self.registry.remove(subscriber)

    # === cross-process relay ===

    async def _publish(self, conversation_id: str, event: dict[str, Any], manuscript_id: Optional[str]) -> None:
        row = {
            "origin": self.origin,
            "conversation_id": conversation_id,
            "manuscript_id": manuscript_id,
            "event": json.loads(json.dumps(event, default=str)),
        }
        try:
            await self.repo.insert_realtime_event(row)
        except Exception as e:
            logger.warning("[SSE] relay publish failed conversation=%s (ignored): %s", conversation_id, e)

    async def relay_once(self) -> int:
        """
        读取游标之后的 realtime_events，把其它进程发布的事件投递给本进程订阅者；返回投递的事件数。

        中文注释:
        - 首次调用只把游标定位到当前最新 id，不回放历史事件；
        - 没有本地订阅者的会话直接跳过，游标照常前进。
        """
        if self._relay_cursor is None:
            self._relay_cursor = await self.repo.latest_realtime_event_id()
            return 0

        rows = await self.repo.list_realtime_events_after(self._relay_cursor, limit=self.config.relay_batch)
        relayed = 0
        for row in rows:
            self._relay_cursor = max(self._relay_cursor, int(row["id"]))
            if row.get("origin") == self.origin:
                continue
            conversation_id = str(row.get("conversation_id") or "")
            if not conversation_id or not self.registry.count(conversation_id):
                continue
            try:
                await self.deliver(conversation_id, row.get("event") or {}, row.get("manuscript_id"))
            except Exception as e:
                logger.warning("[SSE] relay delivery failed event=%s (ignored): %s", row.get("id"), e)
                continue
            relayed += 1
        return relayed

    async def prune_relay(self) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.config.relay_retention_sec)
        await self.repo.delete_realtime_events_before(cutoff.isoformat())

    # === background loops ===

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_sec)
            self.heartbeat()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_sec)
            self.sweep_stale()
            if self.config.relay_enabled:
                try:
                    await self.prune_relay()
                except Exception as e:
                    logger.warning("[SSE] relay prune failed (ignored): %s", e)

    async def _relay_loop(self) -> None:
        while True:
            try:
                await self.relay_once()
            except Exception as e:
                logger.warning("[SSE] relay poll failed (ignored): %s", e)
            await asyncio.sleep(self.config.relay_poll_sec)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._sweep_loop()),
        ]
        if self.config.relay_enabled:
            self._tasks.append(asyncio.create_task(self._relay_loop()))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.close_all()
