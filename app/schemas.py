from typing import Annotated, List, Optional, Union

from pydantic import AwareDatetime, BaseModel, Field, StringConstraints, model_validator


class Action(BaseModel):
    id: str
    name: str


class ActionItem(BaseModel):
    id: str
    order_index: int
    action_plan_id: str
    action_id: str
    action_name: str


class ActionPlan(BaseModel):
    id: str
    name: str
    created_at: str
    deleted_at: Optional[str] = None
    items: List[ActionItem] = Field(default_factory=list)


class ActionItemExecution(BaseModel):
    id: str
    order_index: int
    action_item_id: Optional[str] = None
    action_id: str
    action_name: str
    action_plan_execution_id: str
    finished: Optional[str] = None
    finished_display: str = ""

    @property
    def is_finished(self) -> bool:
        return self.finished is not None


class ActionPlanExecution(BaseModel):
    id: str
    action_plan_id: str
    action_plan_name: str
    started: str
    started_display: str = ""
    finished: Optional[str] = None
    finished_display: str = ""
    items: List[ActionItemExecution] = Field(default_factory=list)
    can_complete: bool = False
    can_reopen: bool = False

    @property
    def is_completed(self) -> bool:
        return self.finished is not None


class ExecutionList(BaseModel):
    unfinished: List[ActionPlanExecution] = Field(default_factory=list)
    finished: List[ActionPlanExecution] = Field(default_factory=list)


class CompletionStatus(BaseModel):
    all_finished: bool
    finished_count: int
    total_count: int


class ItemFinishedState(BaseModel):
    finished: bool
    finished_at: Optional[str] = None
    finished_display: str = ""


# A new item names either an existing action (by id) or an action to reuse/create (by name).
class ItemRef(BaseModel):
    action_id: Optional[str] = None
    action_name: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "ItemRef":
        if bool(self.action_id) == bool(self.action_name and self.action_name.strip()):
            raise ValueError("Provide exactly one of action_id or action_name.")
        return self


class CreatePlanRequest(BaseModel):
    name: str
    items: List[Union[ItemRef, str]] = Field(default_factory=list)


class RenameRequest(BaseModel):
    name: str


class AddItemRequest(ItemRef):
    position: Optional[int] = None


class ReorderItemsRequest(BaseModel):
    item_ids: List[str]


class SetItemFinishedRequest(BaseModel):
    finished: bool


# Backup files come from outside; timestamps must carry a timezone and names must not be blank.
BackupName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class BackupPlanItem(BaseModel):
    order_index: int = Field(ge=0)
    action_name: BackupName


class BackupActionPlan(BaseModel):
    id: BackupName
    name: BackupName
    deleted_at: Optional[AwareDatetime] = None
    items: List[BackupPlanItem] = Field(default_factory=list)


class BackupExecutionItem(BaseModel):
    order_index: int = Field(ge=0)
    action_name: BackupName
    finished: Optional[AwareDatetime] = None


class BackupExecution(BaseModel):
    id: BackupName
    action_plan: str
    started: AwareDatetime
    finished: Optional[AwareDatetime] = None
    items: List[BackupExecutionItem] = Field(default_factory=list)


class BackupFile(BaseModel):
    version: int
    exported_at: AwareDatetime
    action_plans: List[BackupActionPlan] = Field(default_factory=list)
    action_plan_executions: List[BackupExecution] = Field(default_factory=list)
