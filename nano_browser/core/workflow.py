"""
预定义计划 - 语义工作流产物与任务到计划的查找
"""
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import WorkflowLoadError
from .types import PredefinedPlan

logger = logging.getLogger(__name__)


class WorkflowStep(BaseModel):
    """工作流中的一步（由示教流程生成）"""
    model_config = ConfigDict(populate_by_name=True)

    intent: str
    action_description: str = Field(alias="actionDescription")
    node_identification_strategy: Optional[str] = Field(None, alias="nodeIdentificationStrategy")
    validation_strategy: str = Field(alias="validationStrategy")
    timeout_ms: int = Field(5000, alias="timeoutMs", ge=0)

    def to_instruction(self) -> str:
        """渲染为计划中的一行步骤"""
        text = f"{self.intent}: {self.action_description}"
        if self.node_identification_strategy:
            text += f" (locate: {self.node_identification_strategy})"
        text += f" (verify: {self.validation_strategy}; timeout {self.timeout_ms / 1000:g}s)"
        return text


class WorkflowMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    goal: str
    description: Optional[str] = None
    recording_id: Optional[str] = Field(None, alias="recordingId")


class SemanticWorkflow(BaseModel):
    """语义工作流"""
    metadata: WorkflowMetadata
    steps: List[WorkflowStep] = Field(min_length=1)

    def to_plan(self) -> PredefinedPlan:
        return PredefinedPlan(
            name=self.metadata.name,
            goal=self.metadata.goal,
            steps=tuple(step.to_instruction() for step in self.steps),
            agent_id=self.metadata.recording_id
        )


def load_workflow(path: Union[str, Path]) -> SemanticWorkflow:
    """从JSON文件加载工作流"""
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise WorkflowLoadError(f"Cannot read workflow {path}: {e}") from e
    try:
        return SemanticWorkflow.model_validate_json(raw)
    except ValidationError as e:
        raise WorkflowLoadError(f"Invalid workflow {path}: {e}") from e


class PlanCatalog:
    """
    任务文本到预定义计划的查找表

    在运行开始前执行：任务文本（忽略大小写和首尾空白）完全匹配时，
    用目录中的任务描述和计划替换原任务。
    """

    def __init__(self):
        self._plans: Dict[str, Tuple[str, PredefinedPlan]] = {}

    @staticmethod
    def _key(task: str) -> str:
        return task.strip().lower()

    def register(self, trigger: str, plan: PredefinedPlan, task: Optional[str] = None) -> None:
        self._plans[self._key(trigger)] = (task or plan.goal or trigger, plan)

    def lookup(self, task: str) -> Optional[Tuple[str, PredefinedPlan]]:
        return self._plans.get(self._key(task))

    def __len__(self) -> int:
        return len(self._plans)

    @classmethod
    def from_config(cls, plans: Optional[Dict]) -> "PlanCatalog":
        """
        从配置构建

        plans:
          "star the repo":
            task: "Star the repository on GitHub"
            name: "GitHub Star"
            goal: "Star the repository"
            steps: [...]
        """
        catalog = cls()
        for trigger, entry in (plans or {}).items():
            if not isinstance(entry, dict):
                logger.warning(f"Skipping malformed plan entry: {trigger}")
                continue
            catalog.register(trigger, PredefinedPlan.from_dict(entry), task=entry.get("task"))
        return catalog
