from pydantic import BaseModel, Field
from typing import Optional, Dict, List
from datetime import datetime

from app.modules.deployments.models import DeploymentStatus


class DeploymentCreate(BaseModel):
    project_name: str = Field(..., max_length=100)
    repo_url: str = Field(..., max_length=2048)
    branch: Optional[str] = None
    build_command: Optional[str] = None
    install_command: Optional[str] = None
    output_dir: Optional[str] = None
    node_version: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)  # passed to the build only, never persisted


class DeploymentRecord(BaseModel):
    id: str
    user_id: str
    project_name: str
    repo_url: str
    branch: str
    build_command: str
    install_command: str
    output_dir: str
    node_version: str
    namespace: str
    status: DeploymentStatus
    public_url: Optional[str] = None
    build_logs: str = ""
    executor_handle: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class DeploymentCreatedResponse(BaseModel):
    id: str
    namespace: str
    status: DeploymentStatus
    message: str = "Deployment started"


class DeploymentResponse(BaseModel):
    id: str
    project_name: str
    repo_url: str
    branch: str
    namespace: str
    status: DeploymentStatus
    public_url: Optional[str] = None
    build_logs: str = ""
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> "DeploymentResponse":
        return cls(**record.model_dump(include=set(cls.model_fields)))


class DeploymentSummary(BaseModel):
    id: str
    project_name: str
    namespace: str
    status: DeploymentStatus
    public_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DeploymentLogsResponse(BaseModel):
    deployment_id: str
    logs: List[str]
    status: DeploymentStatus
    has_more: bool = False
