from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .plan import ServerPlan


class GatewayResult(BaseModel):
    """
    Uniform `{success, data|error}` shape returned by every gateway call.
    """

    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "GatewayResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "GatewayResult":
        return cls(success=False, error=error)


class PanelAccount(BaseModel):
    id: int
    email: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class PanelInstance(BaseModel):
    id: int
    uuid: Optional[str] = None
    identifier: str
    name: str
    description: str = ""
    status: Optional[str] = None
    suspended: bool = False
    user: Optional[int] = None
    limits: Dict[str, int] = Field(default_factory=dict)
    feature_limits: Dict[str, int] = Field(default_factory=dict)


class InstanceResources(BaseModel):
    memory_bytes: int = 0
    cpu_absolute: float = 0.0
    disk_bytes: int = 0
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0
    uptime: int = 0
    state: Optional[str] = None


class InstanceLimits(BaseModel):
    memory: int
    disk: int
    cpu: int
    swap: int = 0
    io: int = 500


class FeatureLimits(BaseModel):
    databases: int = 0
    backups: int = 0
    allocations: int = 1


class DeploySpec(BaseModel):
    locations: List[int] = Field(default_factory=list)
    dedicated_ip: bool = False
    port_range: List[str] = Field(default_factory=list)


class InstanceRequest(BaseModel):
    """
    Body of a panel server-create call, built from a plan's template.
    """

    name: str
    user: int
    egg: int
    docker_image: str
    startup: Optional[str] = None
    environment: Dict[str, Any] = Field(default_factory=dict)
    limits: InstanceLimits
    feature_limits: FeatureLimits = Field(default_factory=FeatureLimits)
    deploy: DeploySpec = Field(default_factory=DeploySpec)

    @classmethod
    def from_plan(
        cls,
        plan: ServerPlan,
        account_id: int,
        name: str,
        default_docker_image: str,
    ) -> "InstanceRequest":
        return cls(
            name=name,
            user=account_id,
            egg=plan.egg_id,
            docker_image=plan.docker_image or default_docker_image,
            startup=plan.startup_command or None,
            environment=plan.parsed_environment(),
            limits=InstanceLimits(
                memory=plan.ram,
                disk=plan.disk,
                cpu=plan.cpu,
                swap=plan.swap,
                io=plan.io,
            ),
            feature_limits=FeatureLimits(
                databases=plan.databases,
                backups=plan.backups,
                allocations=plan.allocations,
            ),
            deploy=DeploySpec(locations=plan.parsed_location_ids()),
        )
