"""
Review API Routes.

REST endpoints for deliverables, versions, review workflows and checklists.
All endpoints are prefixed with /review.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db.base import get_db
from ..policy.resubmission_gate import PolicyError
from .engine import ReviewRuntime, get_runtime
from .enums import WorkflowStatus
from .errors import ReviewError
from .schemas import (
    ActorRequest,
    CancelRequest,
    ChecklistAttach,
    ChecklistItemUpdate,
    CommentCreate,
    DecisionRequest,
    DecisionResponse,
    DelegationRequest,
    DeliverableCreate,
    ResubmitRequest,
    VersionCommentCreate,
    VersionCommentResolve,
    VersionCreate,
    WorkflowCreate,
)
from .versions import VersionStore

router = APIRouter(prefix="/review", tags=["Review"])


@contextmanager
def _review_errors() -> Iterator[None]:
    """Map engine and policy errors onto HTTP responses."""
    try:
        yield
    except (ReviewError, PolicyError) as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict()) from e


# =============================================================================
# Deliverable & Version Endpoints
# =============================================================================


@router.post("/deliverables", status_code=201)
async def create_deliverable(
    deliverable: DeliverableCreate,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Register a deliverable."""
    db_deliverable = VersionStore(db).create_deliverable(deliverable)
    return {"status": "success", "deliverable": db_deliverable.to_dict()}


@router.get("/deliverables/{deliverable_id}")
async def get_deliverable(
    deliverable_id: str,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    with _review_errors():
        return VersionStore(db).get_deliverable(deliverable_id).to_dict()


@router.post("/deliverables/{deliverable_id}/versions", status_code=201)
async def create_version(
    deliverable_id: str,
    version: VersionCreate,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Store the next version of a deliverable.

    Versions are immutable once stored.
    """
    with _review_errors():
        db_version = VersionStore(db).create_version(deliverable_id, version)
    return {"status": "success", "version": db_version.to_dict()}


@router.get("/deliverables/{deliverable_id}/versions")
async def list_versions(
    deliverable_id: str,
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    with _review_errors():
        versions = VersionStore(db).list_versions(deliverable_id)
    return [v.to_dict() for v in versions]


@router.get("/versions/{version_id}")
async def get_version(
    version_id: str,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    with _review_errors():
        return VersionStore(db).get_version(version_id).to_dict()


@router.put("/versions/{version_id}")
@router.patch("/versions/{version_id}")
async def update_version_blocked(version_id: str) -> None:
    """Versions are immutable and cannot be modified.

    To change a deliverable, store a new version.
    """
    raise HTTPException(
        status_code=405,
        detail={
            "error": "IMMUTABILITY_VIOLATION",
            "message": "Versions are immutable. Store a new version instead.",
            "object_id": version_id,
        },
    )


@router.get("/versions/{version_id}/workflow")
async def get_version_workflow(
    version_id: str,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Full nested state of the version's active (or latest) workflow."""
    with _review_errors():
        return runtime.engine(db).get_workflow(version_id).to_dict()


@router.get("/versions/{version_id}/comments")
async def list_version_comments(
    version_id: str,
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """Comment threads on a version, newest first, replies oldest first."""
    with _review_errors():
        comments = VersionStore(db).list_comments(version_id)
        return [c.to_dict() for c in comments]


@router.post("/versions/{version_id}/comments", status_code=201)
async def add_version_comment(
    version_id: str,
    comment: VersionCommentCreate,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    with _review_errors():
        db_comment = VersionStore(db).add_comment(version_id, comment)
    return {"status": "success", "comment": db_comment.to_dict()}


@router.patch("/versions/{version_id}/comments/{comment_id}")
async def resolve_version_comment(
    version_id: str,
    comment_id: str,
    resolution: VersionCommentResolve,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Resolve or reopen a comment. Content cannot be edited."""
    with _review_errors():
        comment = VersionStore(db).resolve_comment(version_id, comment_id, resolution)
    return {"status": "success", "comment": comment.to_dict()}


# =============================================================================
# Template Endpoints
# =============================================================================


@router.get("/templates")
async def list_templates(
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    return {
        "workflow_types": runtime.templates.workflow_types,
        "checklists": runtime.templates.checklist_ids,
    }


@router.get("/templates/{workflow_type}")
async def get_template(
    workflow_type: str,
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    with _review_errors():
        return runtime.templates.get(workflow_type).model_dump()


# =============================================================================
# Workflow Endpoints
# =============================================================================


@router.post("/workflows", status_code=201)
async def create_workflow(
    request: WorkflowCreate,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Create a draft workflow for a version."""
    checklist = request.checklist
    with _review_errors():
        workflow = runtime.engine(db).create_workflow(
            request.version_id,
            request.workflow_type,
            approver_overrides=request.approver_overrides,
            checklist_template_id=checklist.template_id if checklist else None,
            checklist_items=checklist.items if checklist else None,
            actor=request.actor,
        )
        return {"status": "success", "workflow": workflow.to_dict()}


@router.get("/workflows")
async def list_workflows(
    status: Optional[WorkflowStatus] = None,
    deliverable_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """List workflows with counts per status."""
    result = runtime.engine(db).list_workflows(
        status=status, deliverable_id=deliverable_id, limit=limit, offset=offset
    )
    return {
        "workflows": [w.to_dict(nested=False) for w in result["workflows"]],
        "total": result["total"],
        "by_status": result["by_status"],
    }


@router.get("/workflows/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    with _review_errors():
        return runtime.engine(db).get_workflow_by_id(workflow_id).to_dict()


@router.put("/workflows/{workflow_id}")
@router.patch("/workflows/{workflow_id}")
async def update_workflow_blocked(workflow_id: str) -> None:
    """Workflows change only through their commands (start, decisions, ...)."""
    raise HTTPException(
        status_code=405,
        detail={
            "error": "DIRECT_UPDATE_NOT_ALLOWED",
            "message": "Use the workflow command endpoints to change state.",
            "object_id": workflow_id,
        },
    )


@router.post("/workflows/{workflow_id}/start")
async def start_review(
    workflow_id: str,
    request: Optional[ActorRequest] = None,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    with _review_errors():
        workflow = runtime.engine(db).start_review(
            workflow_id, actor=request.actor if request else None
        )
        return {"status": "success", "workflow": workflow.to_dict()}


@router.post(
    "/workflows/{workflow_id}/levels/{level_id}/decisions",
    response_model=DecisionResponse,
)
async def record_decision(
    workflow_id: str,
    level_id: str,
    request: DecisionRequest,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Record an approver's approve/reject decision on a level."""
    with _review_errors():
        outcome = runtime.engine(db).record_approver_decision(
            workflow_id,
            level_id,
            request.approver_id,
            request.decision,
            comment=request.comment,
        )
        return outcome.to_dict()


@router.post("/workflows/{workflow_id}/levels/{level_id}/delegations")
async def delegate_approval(
    workflow_id: str,
    level_id: str,
    request: DelegationRequest,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    with _review_errors():
        slot = runtime.engine(db).delegate_approval(
            workflow_id,
            level_id,
            request.approver_id,
            request.delegate_id,
            request.delegate_name,
            delegate_email=request.delegate_email,
        )
        return {"status": "success", "approver": slot.to_dict()}


@router.post("/workflows/{workflow_id}/resubmit")
async def resubmit(
    workflow_id: str,
    request: ResubmitRequest,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Send a workflow back into review after a revision request."""
    with _review_errors():
        workflow = runtime.engine(db).resubmit_after_revision(
            workflow_id,
            new_version_id=request.new_version_id,
            change_note=request.change_note,
            actor=request.actor,
        )
        return {"status": "success", "workflow": workflow.to_dict()}


@router.post("/workflows/{workflow_id}/complete")
async def complete_review(
    workflow_id: str,
    request: Optional[ActorRequest] = None,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    with _review_errors():
        workflow = runtime.engine(db).complete_review(
            workflow_id, actor=request.actor if request else None
        )
        return {"status": "success", "workflow": workflow.to_dict()}


@router.post("/workflows/{workflow_id}/cancel")
async def cancel_workflow(
    workflow_id: str,
    request: CancelRequest,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    with _review_errors():
        workflow = runtime.engine(db).cancel_workflow(
            workflow_id, request.reason, actor=request.actor
        )
        return {"status": "success", "workflow": workflow.to_dict()}


@router.get("/workflows/{workflow_id}/audit")
async def get_audit_trail(
    workflow_id: str,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> List[Dict[str, Any]]:
    """Ordered history of a workflow, oldest first."""
    with _review_errors():
        entries = runtime.engine(db).get_audit_trail(workflow_id)
    return [e.to_dict() for e in entries]


@router.post("/workflows/{workflow_id}/checklist", status_code=201)
async def attach_checklist(
    workflow_id: str,
    request: ChecklistAttach,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    with _review_errors():
        checklist = runtime.checklists(db).attach_checklist(
            workflow_id, template_id=request.template_id, items=request.items
        )
        return {"status": "success", "checklist": checklist.to_dict()}


# =============================================================================
# Level Endpoints
# =============================================================================


@router.get("/levels/overdue")
async def list_overdue_levels(
    now: Optional[datetime] = None,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> List[Dict[str, Any]]:
    """In-progress levels past their deadline."""
    levels = runtime.engine(db).find_overdue_levels(now)
    return [level.to_dict() for level in levels]


@router.post("/levels/{level_id}/comments", status_code=201)
async def add_comment(
    level_id: str,
    request: CommentCreate,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    with _review_errors():
        comment = runtime.engine(db).add_comment(
            level_id,
            request.comment_type,
            request.content,
            request.author_name,
            author_id=request.author_id,
        )
        return {"status": "success", "comment": comment.to_dict()}


# =============================================================================
# Checklist Endpoints
# =============================================================================


@router.get("/checklists/{checklist_id}")
async def get_checklist(
    checklist_id: str,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    with _review_errors():
        return runtime.checklists(db).get_checklist(checklist_id).to_dict()


@router.post("/checklists/{checklist_id}/evaluate")
async def evaluate_checklist(
    checklist_id: str,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    with _review_errors():
        return runtime.checklists(db).evaluate(checklist_id).to_dict()


@router.patch("/checklist-items/{item_id}")
async def update_checklist_item(
    item_id: str,
    request: ChecklistItemUpdate,
    db: Session = Depends(get_db),
    runtime: ReviewRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Set an item's status and re-evaluate its checklist."""
    with _review_errors():
        checklist = runtime.checklists(db).set_item_status(
            item_id,
            request.status,
            request.checked_by,
            notes=request.notes,
            score=request.score,
        )
        return checklist.to_dict()
