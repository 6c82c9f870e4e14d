from __future__ import annotations

import logging
from typing import Any, Optional

from app.bots.builtin import build_registry
from app.bots.executor import BotExecutor
from app.core.config import AccessConfig, BotConfig, BroadcastConfig, WorkerConfig
from app.core.job_worker import JobWorker
from app.core.mail import EmailService, email_service
from app.core.scheduler import DeadlineScanner
from app.lib.repository import SupabaseEditorialRepository
from app.services.asset_publisher import AssetPublisher
from app.services.bot_action_processor import BotActionProcessor
from app.services.bot_events import BotEventDispatcher
from app.services.broadcast import Broadcaster
from app.services.command_dispatcher import CommandDispatcher
from app.services.deadline_reminders import DeadlineReminderService
from app.services.editorial_service import ManuscriptStateMachine
from app.services.effective_visibility import EffectiveVisibilityProjector
from app.services.job_processors import JobProcessors
from app.services.job_queue import JobQueue
from app.services.message_service import MessageService
from app.services.notification_service import ParticipantNotifier
from app.services.pipeline_executor import PipelineExecutor
from app.services.reviewer_index import ReviewerAnonymizationIndex
from app.services.role_resolver import RoleResolver
from app.services.workflow_config import WorkflowConfigProvider
from app.services.workflow_participation import WorkflowParticipationService
from app.services.workflow_phase import WorkflowPhaseService
from app.services.workflow_visibility import VisibilityEngine

logger = logging.getLogger("marginalia.runtime")


class EditorialRuntime:
    """
    进程内的服务装配（API 进程与 job worker 各一份）。

    中文注释:
    1) 所有可变状态（审稿人编号缓存、配置缓存、SSE 连接表、bot 注册表）都挂在这里，不使用模块级全局；
    2) MessageService 与 BotActionProcessor 互相引用，构造完成后再互相绑定；
    3) 状态机的提交后钩子顺序：发布资源 -> 邮件通知 -> bot 事件，每个钩子失败互不影响。
    """

    def __init__(
        self,
        repo: Any = None,
        *,
        email: Optional[EmailService] = None,
        storage_client: Any = None,
        access_config: Optional[AccessConfig] = None,
        bot_config: Optional[BotConfig] = None,
        broadcast_config: Optional[BroadcastConfig] = None,
        worker_config: Optional[WorkerConfig] = None,
    ) -> None:
        self.repo = repo if repo is not None else SupabaseEditorialRepository()
        self.access_config = access_config or AccessConfig.from_env()
        self.worker_config = worker_config or WorkerConfig.from_env()

        self.roles = RoleResolver(self.repo)
        self.reviewer_index = ReviewerAnonymizationIndex(self.repo)
        self.engine = VisibilityEngine(self.roles, self.reviewer_index)
        self.projector = EffectiveVisibilityProjector(self.engine)
        self.participation = WorkflowParticipationService(self.roles)
        self.workflow_config = WorkflowConfigProvider(self.repo, ttl_sec=self.access_config.workflow_config_ttl_sec)
        self.broadcaster = Broadcaster(engine=self.engine, workflow_config=self.workflow_config, config=broadcast_config)

        self.registry = build_registry()
        self.executor = BotExecutor(self.registry, self.repo, config=bot_config)
        self.queue = JobQueue(self.repo, config=self.worker_config)
        self.pipelines = PipelineExecutor(self.workflow_config, self.queue)
        self.events = BotEventDispatcher(self.registry, self.queue, self.pipelines)

        self.notifier = ParticipantNotifier(self.repo, email or email_service)
        self.assets = AssetPublisher(self.repo, client=storage_client)
        self.state_machine = ManuscriptStateMachine(
            self.repo,
            hooks=[self.assets.on_status_change, self.notifier.on_status_change, self.events.on_status_change],
        )

        self.messages = MessageService(
            self.repo,
            engine=self.engine,
            projector=self.projector,
            participation=self.participation,
            workflow_config=self.workflow_config,
            broadcaster=self.broadcaster,
            registry=self.registry,
            executor=self.executor,
        )
        self.phases = WorkflowPhaseService(
            self.repo,
            engine=self.engine,
            workflow_config=self.workflow_config,
            messages=self.messages,
            notifier=self.notifier,
            events=self.events,
        )
        self.reminders = DeadlineReminderService(self.repo, self.queue, self.notifier)
        self.action_processor = BotActionProcessor(
            state_machine=self.state_machine,
            phases=self.phases,
            reminders=self.reminders,
            messages=self.messages,
        )
        self.messages.action_processor = self.action_processor

        self.dispatcher = CommandDispatcher(
            registry=self.registry,
            executor=self.executor,
            queue=self.queue,
            messages=self.messages,
            action_processor=self.action_processor,
            roles=self.roles,
        )
        self.scanner = DeadlineScanner(self.repo, self.queue)
        self.jobs = JobProcessors(
            self.repo,
            registry=self.registry,
            executor=self.executor,
            messages=self.messages,
            action_processor=self.action_processor,
            queue=self.queue,
            reminders=self.reminders,
            scanner=self.scanner,
        )

    async def load(self) -> int:
        """从 bot_installations 加载已安装的 bot；返回安装数。"""
        try:
            count = await self.registry.load_installations(self.repo)
        except Exception as e:
            logger.error("[Runtime] loading bot installations failed (ignored): %s", e)
            return 0
        logger.info("[Runtime] %s bot installation(s) loaded", count)
        return count

    def build_worker(self) -> JobWorker:
        return JobWorker(self.repo, self.jobs.handlers(), config=self.worker_config, queue=self.queue)


_runtime: Optional[EditorialRuntime] = None


def get_runtime() -> EditorialRuntime:
    global _runtime
    if _runtime is None:
        _runtime = EditorialRuntime()
    return _runtime


def set_runtime(runtime: Optional[EditorialRuntime]) -> None:
    global _runtime
    _runtime = runtime
