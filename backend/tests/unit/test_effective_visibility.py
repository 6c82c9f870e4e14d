import pytest

from app.models.workflow import WorkflowConfig
from app.services.effective_visibility import EffectiveVisibilityProjector, static_visibility
from app.services.reviewer_index import ReviewerAnonymizationIndex
from app.services.role_resolver import RoleResolver
from app.services.workflow_visibility import VisibilityEngine

MS = "ms-1"

TRADITIONAL_BLIND = WorkflowConfig.model_validate(
    {
        "author": {"seesReviews": "on_release", "seesReviewerIdentity": "never"},
        "reviewers": {"seeEachOther": "never"},
        "phases": {"enabled": True},
    }
)


def _projector(repo) -> EffectiveVisibilityProjector:
    return EffectiveVisibilityProjector(VisibilityEngine(RoleResolver(repo), ReviewerAnonymizationIndex(repo)))


@pytest.mark.parametrize(
    "privacy,level,label",
    [
        ("PUBLIC", "everyone", "Public"),
        ("AUTHOR_VISIBLE", "participants", "All Participants"),
        ("REVIEWER_ONLY", "reviewers_editors", "Reviewers & Editors"),
        ("EDITOR_ONLY", "editors_only", "Editors Only"),
        ("ADMIN_ONLY", "admins_only", "Admins Only"),
    ],
)
@pytest.mark.asyncio
async def test_without_config_only_static_labels(repo, privacy, level, label) -> None:
    result = await _projector(repo).compute(privacy, "rev1", MS, None, "REVIEW")
    assert result.level == level
    assert result.label == label
    assert result.pendingChange is None
    assert result == static_visibility(privacy)


@pytest.mark.asyncio
async def test_reviewer_message_before_release_reports_pending_author_visibility(repo) -> None:
    result = await _projector(repo).compute("AUTHOR_VISIBLE", "rev1", MS, TRADITIONAL_BLIND, "REVIEW")

    assert result.level == "reviewers_editors"
    assert result.label == "Reviewers & Editors"
    assert result.phaseRestricted is True
    assert result.pendingChange is not None
    assert result.pendingChange.willBeVisibleTo == "authors"
    assert result.pendingChange.when == "when reviews are released"


@pytest.mark.asyncio
async def test_reviewer_message_after_release_is_visible_to_authors_not_reviewers(repo) -> None:
    result = await _projector(repo).compute("AUTHOR_VISIBLE", "rev1", MS, TRADITIONAL_BLIND, "RELEASED")

    payload = result.to_payload()
    assert payload["level"] == "participants"
    assert payload["label"] == "Authors & Editors"
    assert payload["releasedToAuthors"] is True
    assert "pendingChange" not in payload


@pytest.mark.asyncio
async def test_permanent_restriction_has_no_pending_change(repo) -> None:
    result = await _projector(repo).compute("REVIEWER_ONLY", "rev1", MS, TRADITIONAL_BLIND, "REVIEW")
    assert result.label == "Reviewers & Editors"
    assert result.pendingChange is None


@pytest.mark.asyncio
async def test_after_all_submit_reports_pending_for_other_reviewers(repo) -> None:
    config = WorkflowConfig.model_validate({"reviewers": {"seeEachOther": "after_all_submit"}})
    result = await _projector(repo).compute("REVIEWER_ONLY", "rev1", MS, config, "REVIEW")

    assert result.phaseRestricted is True
    assert result.pendingChange.willBeVisibleTo == "other reviewers"
    assert result.pendingChange.when == "when all reviews are submitted"


@pytest.mark.asyncio
async def test_author_response_held_until_release(repo) -> None:
    config = WorkflowConfig.model_validate({"reviewers": {"seeAuthorResponses": "on_release"}})
    projector = _projector(repo)

    held = await projector.compute("AUTHOR_VISIBLE", "author", MS, config, "REVIEW")
    assert held.label == "Editors Only"
    assert held.pendingChange.willBeVisibleTo == "reviewers"

    released = await projector.compute("AUTHOR_VISIBLE", "author", MS, config, "RELEASED")
    assert released.label == "All Participants"


@pytest.mark.asyncio
async def test_editor_only_is_not_affected_by_workflow(repo) -> None:
    result = await _projector(repo).compute("EDITOR_ONLY", "rev1", MS, TRADITIONAL_BLIND, "REVIEW")
    assert result.label == "Editors Only"
    assert result.phaseRestricted is None
