"""
Job executors and the Discord capabilities they depend on.

Executors never talk to Discord directly: each takes the narrow capability
it needs (``RoleGateway``, ``MemberCounter``, ``ChannelResolver`` plus the
``MessageSink`` narrowed from a resolved channel). The worker wires these to
logging dry-run gateways unless a real Discord adapter is supplied.
"""

import itertools
import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from guildpass.v1.core.registries import Registry
from guildpass_worker.schemas import ClaimedJob

logger = logging.getLogger(__name__)

TERMINAL_PREFIX = "terminal:"


@dataclass
class ExecutionResult:
    ok: bool
    message: str
    result: dict[str, Any] = field(default_factory=dict)


class Executor(Protocol):
    async def execute(self, job: ClaimedJob) -> ExecutionResult: ...


class RoleGateway(Protocol):
    async def member_has_role(
        self, guild_id: str, discord_user_id: str, role_id: str
    ) -> bool | None:
        """Whether the member holds the role; None when not in the guild."""
        ...

    async def grant_role(
        self, guild_id: str, discord_user_id: str, role_id: str, reason: str
    ) -> None: ...

    async def revoke_role(
        self, guild_id: str, discord_user_id: str, role_id: str, reason: str
    ) -> None: ...


class MemberCounter(Protocol):
    async def count_members(self, guild_id: str, channel_ids: list[str]) -> int | None:
        """Non-bot members able to view any of the channels; None for an unknown guild."""
        ...


@runtime_checkable
class MessageSink(Protocol):
    async def send(self, payload: dict[str, Any]) -> str: ...

    async def edit(self, message_id: str, payload: dict[str, Any]) -> str | None: ...

    async def delete(self, message_id: str) -> bool: ...


class ChannelResolver(Protocol):
    async def fetch_channel(self, channel_id: str) -> Any | None: ...


class UnsupportedChannelError(Exception):
    def __init__(self, channel_id: str):
        super().__init__(f"unsupported_target_channel:{channel_id}")
        self.channel_id = channel_id


def narrow_message_sink(channel: Any, channel_id: str = "") -> MessageSink:
    """The channel as a ``MessageSink``, if it can send, edit and delete."""
    if not isinstance(channel, MessageSink):
        raise UnsupportedChannelError(channel_id or str(getattr(channel, "id", "")))
    return channel


def _non_negative_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value) if value >= 0 else None


def _clean_ids(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [str(value).strip() for value in values if str(value or "").strip()]


class RoleSyncExecutor:
    def __init__(self, roles: RoleGateway):
        self.roles = roles

    async def execute(self, job: ClaimedJob) -> ExecutionResult:
        scope = job.scope
        guild_id = scope["guild_id"]
        discord_user_id = scope["discord_user_id"]
        role_id = scope["role_id"]
        reason = f"role-sync {scope['action']} job={job.job_id}"

        has_role = await self.roles.member_has_role(guild_id, discord_user_id, role_id)

        if scope["action"] == "grant":
            if has_role is None:
                return ExecutionResult(False, f"member_not_in_guild:{discord_user_id}")
            if has_role:
                return ExecutionResult(True, "already_has_role")
            await self.roles.grant_role(guild_id, discord_user_id, role_id, reason)
            if not await self.roles.member_has_role(guild_id, discord_user_id, role_id):
                return ExecutionResult(False, f"grant_verification_failed:{role_id}")
            return ExecutionResult(True, "role_granted")

        if has_role is None:
            return ExecutionResult(True, "member_not_in_guild")
        if not has_role:
            return ExecutionResult(True, "role_already_absent")
        await self.roles.revoke_role(guild_id, discord_user_id, role_id, reason)
        if await self.roles.member_has_role(guild_id, discord_user_id, role_id):
            return ExecutionResult(False, f"revoke_verification_failed:{role_id}")
        return ExecutionResult(True, "role_revoked")


class SeatAuditExecutor:
    def __init__(self, members: MemberCounter):
        self.members = members

    async def execute(self, job: ClaimedJob) -> ExecutionResult:
        checked_at = int(time.time() * 1000)
        context = job.context
        seat_limit = _non_negative_int(context.get("seat_limit"))

        if not context.get("seat_enforcement_enabled"):
            return ExecutionResult(
                True,
                "enforcement_disabled",
                {"seats_used": 0, "seat_limit": seat_limit or 0, "checked_at": checked_at},
            )
        if seat_limit is None:
            return ExecutionResult(False, "seat_limit_missing")

        channel_ids = _clean_ids(context.get("target_channel_ids"))
        if not channel_ids:
            return ExecutionResult(
                True,
                "no_target_channels",
                {"seats_used": 0, "seat_limit": seat_limit, "checked_at": checked_at},
            )

        guild_id = job.scope["guild_id"]
        seats_used = await self.members.count_members(guild_id, channel_ids)
        if seats_used is None:
            return ExecutionResult(False, f"{TERMINAL_PREFIX}guild_not_found:{guild_id}")

        return ExecutionResult(
            True,
            "seat_limit_exceeded" if seats_used > seat_limit else "seat_limit_ok",
            {"seats_used": seats_used, "seat_limit": seat_limit, "checked_at": checked_at},
        )


class SignalMirrorExecutor:
    def __init__(self, channels: ChannelResolver):
        self.channels = channels

    async def execute(self, job: ClaimedJob) -> ExecutionResult:
        target_channel_id = job.scope["target_channel_id"]
        channel = await self.channels.fetch_channel(target_channel_id)
        if channel is None:
            return ExecutionResult(
                False, f"{TERMINAL_PREFIX}target_channel_not_found:{target_channel_id}"
            )
        try:
            sink = narrow_message_sink(channel, target_channel_id)
        except UnsupportedChannelError as e:
            return ExecutionResult(False, f"{TERMINAL_PREFIX}{e}")

        guild_id = getattr(channel, "guild_id", None) or job.payload.get(
            "target_guild_id"
        )
        existing_id = str(job.context.get("existing_mirrored_message_id") or "").strip()
        extra_ids = _clean_ids(job.context.get("existing_mirrored_extra_message_ids"))

        if job.scope["event_type"] == "delete":
            to_delete = ([existing_id] if existing_id else []) + extra_ids
            if not to_delete:
                return ExecutionResult(
                    True,
                    "delete_no_existing_messages",
                    {"mirrored_extra_message_ids": [], "mirrored_guild_id": guild_id},
                )
            for message_id in to_delete:
                await sink.delete(message_id)
            return ExecutionResult(
                True,
                "messages_deleted",
                {
                    "mirrored_message_id": existing_id or None,
                    "mirrored_extra_message_ids": [],
                    "mirrored_guild_id": guild_id,
                },
            )

        payload = {
            "content": job.payload.get("content") or "",
            "attachments": job.payload.get("attachments") or [],
        }
        message_id = None
        if existing_id:
            message_id = await sink.edit(existing_id, payload)
        if message_id is None:
            message_id = await sink.send(payload)

        return ExecutionResult(
            True,
            "message_edited" if message_id == existing_id else "message_sent",
            {
                "mirrored_message_id": message_id,
                "mirrored_extra_message_ids": [],
                "mirrored_guild_id": guild_id,
            },
        )


class DryRunChannel:
    """Message sink that only logs; message ids are synthesized."""

    def __init__(
        self,
        channel_id: str,
        guild_id: str | None = None,
        ids: Iterator[int] | None = None,
    ):
        self.id = channel_id
        self.guild_id = guild_id
        self._ids = ids if ids is not None else itertools.count(1)

    async def send(self, payload: dict[str, Any]) -> str:
        message_id = f"dry-run-{self.id}-{next(self._ids)}"
        logger.info(
            "Dry-run send",
            extra={"channel_id": self.id, "message_id": message_id},
        )
        return message_id

    async def edit(self, message_id: str, payload: dict[str, Any]) -> str | None:
        logger.info(
            "Dry-run edit", extra={"channel_id": self.id, "message_id": message_id}
        )
        return message_id

    async def delete(self, message_id: str) -> bool:
        logger.info(
            "Dry-run delete", extra={"channel_id": self.id, "message_id": message_id}
        )
        return True


class DryRunDiscord:
    """In-memory stand-in for Discord that logs every side effect."""

    def __init__(self, member_count: int = 0):
        self.member_count = member_count
        self.roles: set[tuple[str, str, str]] = set()
        # Shared by every channel this instance hands out
        self._message_ids = itertools.count(1)

    async def member_has_role(
        self, guild_id: str, discord_user_id: str, role_id: str
    ) -> bool | None:
        return (guild_id, discord_user_id, role_id) in self.roles

    async def grant_role(
        self, guild_id: str, discord_user_id: str, role_id: str, reason: str
    ) -> None:
        logger.info(
            "Dry-run grant",
            extra={
                "guild_id": guild_id,
                "discord_user_id": discord_user_id,
                "role_id": role_id,
                "reason": reason,
            },
        )
        self.roles.add((guild_id, discord_user_id, role_id))

    async def revoke_role(
        self, guild_id: str, discord_user_id: str, role_id: str, reason: str
    ) -> None:
        logger.info(
            "Dry-run revoke",
            extra={
                "guild_id": guild_id,
                "discord_user_id": discord_user_id,
                "role_id": role_id,
                "reason": reason,
            },
        )
        self.roles.discard((guild_id, discord_user_id, role_id))

    async def count_members(self, guild_id: str, channel_ids: list[str]) -> int | None:
        return self.member_count

    async def fetch_channel(self, channel_id: str) -> DryRunChannel | None:
        return DryRunChannel(channel_id, ids=self._message_ids)


class ExecutorRegistry(Registry[Executor]):
    """Executors keyed by job family."""

    def __init__(self):
        super().__init__("Executor")


def build_executor_registry(discord: Any | None = None) -> ExecutorRegistry:
    """Wire the built-in executors to ``discord`` (dry-run when omitted)."""
    discord = discord or DryRunDiscord()
    registry = ExecutorRegistry()
    registry.register("role_sync", RoleSyncExecutor(discord))
    registry.register("seat_audit", SeatAuditExecutor(discord))
    registry.register("signal_mirror", SignalMirrorExecutor(discord))
    registry.freeze()
    return registry
