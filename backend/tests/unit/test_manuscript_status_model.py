from __future__ import annotations

from app.models.manuscript import (
    ManuscriptStatus,
    is_released_phase,
    normalize_phase,
    normalize_status,
)


def test_allowed_next_under_review_includes_decision_paths() -> None:
    allowed = ManuscriptStatus.allowed_next(ManuscriptStatus.UNDER_REVIEW.value)
    assert ManuscriptStatus.ACCEPTED.value in allowed
    assert ManuscriptStatus.REVISION_REQUESTED.value in allowed
    assert ManuscriptStatus.REJECTED.value in allowed
    assert ManuscriptStatus.PUBLISHED.value not in allowed
    assert ManuscriptStatus.RETRACTED.value not in allowed


def test_published_only_reachable_from_accepted() -> None:
    for status in ManuscriptStatus:
        reachable = ManuscriptStatus.PUBLISHED.value in ManuscriptStatus.allowed_next(status.value)
        assert reachable is (status == ManuscriptStatus.ACCEPTED)
    assert ManuscriptStatus.required_previous("published") == ManuscriptStatus.ACCEPTED.value


def test_retracted_only_reachable_from_published() -> None:
    for status in ManuscriptStatus:
        reachable = ManuscriptStatus.RETRACTED.value in ManuscriptStatus.allowed_next(status.value)
        assert reachable is (status == ManuscriptStatus.PUBLISHED)


def test_ungated_moves_are_open_between_any_statuses() -> None:
    assert ManuscriptStatus.ACCEPTED.value in ManuscriptStatus.allowed_next("SUBMITTED")
    assert ManuscriptStatus.ACCEPTED.value in ManuscriptStatus.allowed_next("REVISION_REQUESTED")
    assert ManuscriptStatus.REJECTED.value in ManuscriptStatus.allowed_next("PUBLISHED")
    assert ManuscriptStatus.UNDER_REVIEW.value in ManuscriptStatus.allowed_next("REJECTED")
    assert ManuscriptStatus.SUBMITTED.value in ManuscriptStatus.allowed_next("RETRACTED")


def test_same_or_unknown_status_has_no_moves() -> None:
    for status in ManuscriptStatus:
        assert status.value not in ManuscriptStatus.allowed_next(status.value)
    assert ManuscriptStatus.allowed_next("pre_check") == set()
    assert ManuscriptStatus.allowed_next("") == set()


def test_normalize_status_and_phase() -> None:
    assert normalize_status(" under_review ") == "UNDER_REVIEW"
    assert normalize_status("pre_check") is None
    assert normalize_status("") is None
    assert normalize_phase("released") == "RELEASED"
    assert is_released_phase("AUTHOR_RESPONDING") is True
    assert is_released_phase("DELIBERATION") is False
    assert is_released_phase(None) is False
