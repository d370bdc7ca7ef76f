"""sync-external-workspace handler.

Pulls the member list of an organization's chat workspace and upserts
each member into the local user store: match on external id first, then
on email, create when neither matches. Members are processed one by one;
a failing member is logged and counted, and the rest continue.
"""

from __future__ import annotations

from typing import Any, cast

from teamspark.core.errors import TransientError, UnrecoverableJobError
from teamspark.execution.models import SyncWorkspacePayload
from teamspark.execution.worker import JobContext
from teamspark.jobs.datastore import DataStore, UserRecord, Workspace
from teamspark.jobs.providers import DirectoryProvider, RemoteMember


class WorkspaceSyncHandler:
    def __init__(self, datastore: DataStore, directory: DirectoryProvider):
        self.datastore = datastore
        self.directory = directory

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        payload = cast(SyncWorkspacePayload, ctx.payload)

        workspace = await self.datastore.get_workspace(payload.workspace_id)
        if workspace is None:
            raise UnrecoverableJobError(f"Workspace {payload.workspace_id} not found")
        await ctx.update_progress(10)

        match payload.sync_type:
            case "users":
                return await self._sync_users(ctx, workspace)
            case "channels":
                return await self._sync_channels(ctx, workspace)
            case "messages":
                raise UnrecoverableJobError("Message sync is not supported")
            case other:
                raise UnrecoverableJobError(f"Unknown sync type: {other}")

    async def _sync_users(self, ctx: JobContext, workspace: Workspace) -> dict[str, Any]:
        members = await self.directory.list_members(workspace.bot_token)
        await ctx.update_progress(50)

        eligible = [m for m in members if not m.deleted and not m.is_bot and m.email]
        created = updated = failed = 0
        for member in eligible:
            try:
                was_created = await self._upsert(workspace.organization_id, member, member.email or "")
            except Exception as exc:
                failed += 1
                ctx.log.warning("workspace_member_sync_failed", external_id=member.external_id, error=str(exc))
                continue
            if was_created:
                created += 1
            else:
                updated += 1

        if eligible and failed == len(eligible):
            raise TransientError(f"All {failed} member upserts failed for workspace {workspace.id}")

        await ctx.update_progress(100)
        ctx.log.info(
            "workspace_users_synced",
            workspace_id=workspace.id,
            total=len(members),
            created=created,
            updated=updated,
            failed=failed,
        )
        return {
            "success": True,
            "total_users": len(members),
            "synced_users": created + updated,
            "created_users": created,
            "updated_users": updated,
            "skipped_users": len(members) - len(eligible),
            "failed_users": failed,
        }

    async def _upsert(self, organization_id: str, member: RemoteMember, email: str) -> bool:
        """Returns True when a user was created."""
        user: UserRecord | None = await self.datastore.find_user_by_external_id(
            organization_id, member.external_id
        )
        if user is None:
            user = await self.datastore.find_user_by_email(organization_id, email)
        if user is not None:
            await self.datastore.update_user(
                user.id,
                name=member.display_name or user.name,
                external_id=member.external_id,
                avatar_url=member.avatar_url or user.avatar_url,
            )
            return False
        await self.datastore.create_user(
            organization_id,
            email=email,
            name=member.display_name,
            external_id=member.external_id,
            avatar_url=member.avatar_url,
            role="MEMBER",
        )
        return True

    async def _sync_channels(self, ctx: JobContext, workspace: Workspace) -> dict[str, Any]:
        channels = await self.directory.list_channels(workspace.bot_token)
        await ctx.update_progress(100)
        ctx.log.info("workspace_channels_synced", workspace_id=workspace.id, total=len(channels))
        return {"success": True, "total_channels": len(channels)}


__all__ = ["WorkspaceSyncHandler"]
