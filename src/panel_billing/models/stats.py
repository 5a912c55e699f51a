from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from .provisioning import PanelInstance


class AllocatedResources(BaseModel):
    """Sum of plan limits across a user's servers (MB / percent)."""

    cpu: int = 0
    memory: int = 0
    disk: int = 0


class InstanceSyncResult(BaseModel):
    success: bool
    error: Optional[str] = None
    servers: List[PanelInstance] = Field(default_factory=list)
    resources: AllocatedResources = Field(default_factory=AllocatedResources)


class ServerState(BaseModel):
    identifier: str
    state: Optional[str] = None


class LiveStats(BaseModel):
    servers: int = 0
    cpu_absolute: float = 0.0
    memory_bytes: int = 0
    disk_bytes: int = 0
    statuses: List[ServerState] = Field(default_factory=list)


class UsageStats(BaseModel):
    total_users: int
    linked_users: int
    active_instances: int
    panel_servers: int
    unreachable_accounts: int = 0
