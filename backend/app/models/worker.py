"""Pydantic models for workers and their block graphs."""

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, model_validator
from pydantic import Field as PydanticField

# =============================================================================
# Graph primitives
# =============================================================================


class Position(BaseModel):
    """Canvas position of a block."""

    x: float = 0
    y: float = 0


class SubBlockState(BaseModel):
    """A single configured field inside a block."""

    id: str
    type: str = "short-input"
    value: Any = None


class BlockState(BaseModel):
    """One workflow step (node) in a worker graph."""

    id: str
    type: str
    name: str = ""
    position: Position = PydanticField(default_factory=Position)
    enabled: bool = True
    horizontal_handles: bool = PydanticField(default=False, alias="horizontalHandles")
    is_wide: bool = PydanticField(default=False, alias="isWide")
    height: float = 0
    sub_blocks: dict[str, SubBlockState] = PydanticField(
        default_factory=dict, alias="subBlocks"
    )
    outputs: dict[str, Any] = PydanticField(default_factory=dict)
    data: dict[str, Any] = PydanticField(default_factory=dict)
    # Subflow membership
    parent_id: str | None = PydanticField(default=None, alias="parentId")
    extent: str | None = None

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _lift_container_fields(self) -> "BlockState":
        # Older clients only carry subflow membership inside ``data``
        if self.parent_id is None and self.data.get("parentId"):
            self.parent_id = self.data["parentId"]
        if self.extent is None and self.data.get("extent"):
            self.extent = self.data["extent"]
        return self


class WorkerEdge(BaseModel):
    """A directed connection between two blocks."""

    id: str
    source: str
    target: str
    source_handle: str | None = PydanticField(default=None, alias="sourceHandle")
    target_handle: str | None = PydanticField(default=None, alias="targetHandle")

    model_config = {"populate_by_name": True}


# =============================================================================
# Subflows (tagged union on ``type``)
# =============================================================================


class SubflowType(str, Enum):
    """Kinds of block groupings sharing iteration semantics."""

    LOOP = "loop"
    PARALLEL = "parallel"


class LoopConfig(BaseModel):
    """Iterate a group of blocks a fixed number of times or over a collection."""

    type: Literal["loop"] = "loop"
    id: str
    nodes: list[str] = PydanticField(default_factory=list)
    iterations: int = 5
    loop_type: Literal["for", "forEach"] = PydanticField(default="for", alias="loopType")
    for_each_items: list[Any] | dict[str, Any] | str | None = PydanticField(
        default=None, alias="forEachItems"
    )

    model_config = {"populate_by_name": True}


class ParallelConfig(BaseModel):
    """Fan a group of blocks out over a count or a collection."""

    type: Literal["parallel"] = "parallel"
    id: str
    nodes: list[str] = PydanticField(default_factory=list)
    distribution: list[Any] | dict[str, Any] | str | None = None
    parallel_type: Literal["count", "collection"] = PydanticField(
        default="count", alias="parallelType"
    )
    count: int = 2

    model_config = {"populate_by_name": True}


SubflowConfig = Annotated[LoopConfig | ParallelConfig, PydanticField(discriminator="type")]


# =============================================================================
# Graph
# =============================================================================


class WorkerGraph(BaseModel):
    """In-memory representation of a worker's block graph."""

    blocks: dict[str, BlockState] = PydanticField(default_factory=dict)
    edges: list[WorkerEdge] = PydanticField(default_factory=list)
    loops: dict[str, LoopConfig] = PydanticField(default_factory=dict)
    parallels: dict[str, ParallelConfig] = PydanticField(default_factory=dict)

    model_config = {"populate_by_name": True}

    def find_block_by_type(self, block_type: str) -> BlockState | None:
        """Return the first block of the given type, if any."""
        for block in self.blocks.values():
            if block.type == block_type:
                return block
        return None

    def subflows(self) -> list[LoopConfig | ParallelConfig]:
        """All loops and parallels as a flat list."""
        return [*self.loops.values(), *self.parallels.values()]


class SaveGraphResult(BaseModel):
    """Outcome of a replace-on-save."""

    success: bool
    json_blob: dict[str, Any] | None = PydanticField(default=None, alias="jsonBlob")
    error: str | None = None

    model_config = {"populate_by_name": True}


# =============================================================================
# Worker
# =============================================================================


class WorkerCreate(BaseModel):
    """Request model for creating a worker."""

    name: str = PydanticField(min_length=1)
    description: str | None = None
    color: str = "#3972F6"
    workspace_id: str | None = PydanticField(default=None, alias="workspaceId")
    variables: dict[str, Any] = PydanticField(default_factory=dict)

    model_config = {"populate_by_name": True}


class WorkerUpdate(BaseModel):
    """Request model for updating worker metadata."""

    name: str | None = PydanticField(default=None, min_length=1)
    description: str | None = None
    color: str | None = None
    variables: dict[str, Any] | None = None


class Worker(BaseModel):
    """A saved workflow definition and its deployment markers."""

    id: str
    user_id: str = PydanticField(alias="userId")
    workspace_id: str | None = PydanticField(default=None, alias="workspaceId")
    name: str
    description: str | None = None
    color: str = "#3972F6"
    variables: dict[str, Any] = PydanticField(default_factory=dict)
    is_deployed: bool = PydanticField(default=False, alias="isDeployed")
    deployed_at: str | None = PydanticField(default=None, alias="deployedAt")
    deployed_snapshot_id: str | None = PydanticField(
        default=None, alias="deployedSnapshotId"
    )
    run_count: int = PydanticField(default=0, alias="runCount")
    last_run_at: str | None = PydanticField(default=None, alias="lastRunAt")
    last_synced: str | None = PydanticField(default=None, alias="lastSynced")
    created_at: str = PydanticField(alias="createdAt")
    updated_at: str = PydanticField(alias="updatedAt")

    model_config = {"populate_by_name": True}


class DeploymentInfo(BaseModel):
    """Deployment status of a worker as reported to clients."""

    is_deployed: bool = PydanticField(alias="isDeployed")
    deployed_at: str | None = PydanticField(default=None, alias="deployedAt")
    needs_redeployment: bool = PydanticField(default=False, alias="needsRedeployment")

    model_config = {"populate_by_name": True}
