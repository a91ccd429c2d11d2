"""
Workflow and checklist templates.

A workflow type names an ordered list of level definitions. Resolution is a
pure lookup: the registry never touches the database.

Usage:
    registry = TemplateRegistry()
    levels = registry.resolve("structured")
"""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, constr

from .approvers import ApproverSpec, RoleApprover
from .errors import NotFound, UnknownWorkflowType

logger = structlog.get_logger()


class LevelDefinition(BaseModel):
    """Blueprint for one approval level."""

    model_config = ConfigDict(extra="forbid")

    name: constr(min_length=1, max_length=128)
    description: Optional[str] = None
    approvers: List[ApproverSpec] = Field(
        default_factory=list,
        description="Who approves this level; may be overridden per workflow",
    )
    min_approvers: Optional[int] = Field(
        None, ge=1, description="Quorum; omitted means every assigned approver"
    )
    can_delegate: bool = False
    deadline_offset_hours: Optional[int] = Field(
        None, ge=1, description="Hours after activation before the level is overdue"
    )


class WorkflowTemplate(BaseModel):
    """An ordered sequence of levels registered under a workflow type."""

    model_config = ConfigDict(extra="forbid")

    workflow_type: constr(min_length=1, max_length=64)
    description: Optional[str] = None
    levels: List[LevelDefinition] = Field(..., min_length=1)
    checklist_template: Optional[str] = Field(
        None, description="Checklist template attached when none is given"
    )


class ChecklistItemDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: constr(min_length=1, max_length=64)
    title: constr(min_length=1, max_length=256)
    description: Optional[str] = None
    is_required: bool = True


class ChecklistTemplate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    template_id: constr(min_length=1, max_length=128)
    name: constr(min_length=1, max_length=256)
    items: List[ChecklistItemDefinition] = Field(..., min_length=1)


class WorkflowTemplates:
    """Built-in templates."""

    @staticmethod
    def structured() -> WorkflowTemplate:
        """Internal review, then quality assurance, then the client."""
        return WorkflowTemplate(
            workflow_type="structured",
            description="Three-stage review ending with client sign-off",
            levels=[
                LevelDefinition(
                    name="Internal Review",
                    description="Project manager checks scope and completeness",
                    approvers=[RoleApprover(role="project_manager")],
                    deadline_offset_hours=48,
                ),
                LevelDefinition(
                    name="Quality Assurance",
                    description="Quality lead verifies standards",
                    approvers=[RoleApprover(role="quality_lead")],
                    deadline_offset_hours=24,
                ),
                LevelDefinition(
                    name="Client Approval",
                    description="Client signs off the deliverable",
                    approvers=[RoleApprover(role="client")],
                    deadline_offset_hours=120,
                ),
            ],
        )

    @staticmethod
    def simple() -> WorkflowTemplate:
        return WorkflowTemplate(
            workflow_type="simple",
            description="Single approval by the project manager",
            levels=[
                LevelDefinition(
                    name="Approval",
                    approvers=[RoleApprover(role="project_manager")],
                    min_approvers=1,
                    can_delegate=True,
                ),
            ],
        )

    @staticmethod
    def parallel() -> WorkflowTemplate:
        """One panel level whose reviewers decide concurrently."""
        return WorkflowTemplate(
            workflow_type="parallel",
            description="Panel review; every reviewer must approve",
            levels=[
                LevelDefinition(
                    name="Panel Review",
                    approvers=[RoleApprover(role="reviewers")],
                    can_delegate=True,
                    deadline_offset_hours=72,
                ),
            ],
        )

    @staticmethod
    def standard_checklist() -> ChecklistTemplate:
        return ChecklistTemplate(
            template_id="standard-deliverable",
            name="Standard deliverable quality checks",
            items=[
                ChecklistItemDefinition(
                    category="content", title="Content matches the agreed brief"
                ),
                ChecklistItemDefinition(
                    category="content", title="Spelling and grammar checked"
                ),
                ChecklistItemDefinition(
                    category="branding", title="Logo and colours follow brand guide"
                ),
                ChecklistItemDefinition(
                    category="technical",
                    title="Files open and export at the required resolution",
                ),
                ChecklistItemDefinition(
                    category="legal",
                    title="Third-party assets are licensed",
                    is_required=False,
                ),
            ],
        )


class TemplateRegistry:
    """Workflow types and checklist templates available to the engine."""

    def __init__(
        self,
        templates: Optional[Iterable[WorkflowTemplate]] = None,
        checklists: Optional[Iterable[ChecklistTemplate]] = None,
        include_builtin: bool = True,
    ):
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._checklists: Dict[str, ChecklistTemplate] = {}
        if include_builtin:
            for template in (
                WorkflowTemplates.structured(),
                WorkflowTemplates.simple(),
                WorkflowTemplates.parallel(),
            ):
                self.register(template)
            self.register_checklist(WorkflowTemplates.standard_checklist())
        for template in templates or []:
            self.register(template)
        for checklist in checklists or []:
            self.register_checklist(checklist)

    def register(self, template: WorkflowTemplate) -> None:
        """Add or replace a workflow type."""
        self._templates[template.workflow_type] = template

    def register_checklist(self, checklist: ChecklistTemplate) -> None:
        self._checklists[checklist.template_id] = checklist

    @property
    def workflow_types(self) -> List[str]:
        return sorted(self._templates)

    @property
    def checklist_ids(self) -> List[str]:
        return sorted(self._checklists)

    def get(self, workflow_type: str) -> WorkflowTemplate:
        try:
            return self._templates[workflow_type].model_copy(deep=True)
        except KeyError:
            raise UnknownWorkflowType(workflow_type, list(self._templates)) from None

    def resolve(self, workflow_type: str) -> List[LevelDefinition]:
        """Ordered level definitions for a workflow type."""
        return self.get(workflow_type).levels

    def checklist(self, template_id: str) -> ChecklistTemplate:
        try:
            return self._checklists[template_id].model_copy(deep=True)
        except KeyError:
            raise NotFound("ChecklistTemplate", template_id) from None

    def load_file(self, path: Union[str, Path]) -> None:
        """Register templates from ``{"workflows": [...], "checklists": [...]}``."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        for item in raw.get("workflows", []):
            self.register(WorkflowTemplate.model_validate(item))
        for item in raw.get("checklists", []):
            self.register_checklist(ChecklistTemplate.model_validate(item))
        logger.info(
            "templates_loaded",
            path=str(path),
            workflow_types=self.workflow_types,
            checklists=self.checklist_ids,
        )

    @classmethod
    def from_settings(cls, settings) -> "TemplateRegistry":
        registry = cls()
        if settings.templates_file:
            registry.load_file(settings.templates_file)
        return registry
