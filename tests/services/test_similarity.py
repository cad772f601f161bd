import asyncio
from datetime import datetime, timedelta, timezone

import asyncpg
import pytest

from api.errors import Cancelled, IndexUnavailable, NotFound
from api.schemas import Principal, SimilarityCandidate, TargetBug
from api.services import similarity

ORG = "0f4b1a52-3c1d-4a7e-9d2e-6b3c0c8a1e01"
APP = "5d0a6b1e-8f7c-4c1a-b0a3-2f9e7d6c5b40"
NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
PRINCIPAL = Principal(user_id="8a6c3f0e-1b2d-4e5f-9a8b-7c6d5e4f3a21")


def candidate(bug_id: str, score: float, *, app: str | None = APP, age_days: int = 0) -> SimilarityCandidate:
    return SimilarityCandidate(
        bug_id=bug_id,
        similarity=score,
        application_id=app,
        display_id=f"BUG-{bug_id}",
        title=f"Bug {bug_id}",
        description="Something broke",
        status="open",
        created_at=NOW - timedelta(days=age_days),
    )


class FakeTracker:
    def __init__(
            self,
            *,
            has_embedding: bool = True,
            candidates: list[SimilarityCandidate] | None = None,
            dismissed: set[str] | None = None,
            names: dict[str, str] | None = None,
            names_error: Exception | None = None,
            index_error: Exception | None = None,
            index_delay: float = 0.0,
            exists: bool = True,
    ) -> None:
        self.has_embedding = has_embedding
        self.candidates = candidates or []
        self.dismissed = dismissed or set()
        self.names = {APP: "Checkout"} if names is None else names
        self.names_error = names_error
        self.index_error = index_error
        self.index_delay = index_delay
        self.exists = exists
        self.index_calls: list[tuple[str, str, float, int]] = []
        self.name_lookups: list[list[str | None]] = []

    async def require_visible_bug(self, pool, bug_id, user_id, *, which="target"):  # noqa: ANN001
        if not self.exists:
            raise NotFound(which)
        return TargetBug(id=bug_id, organization_id=ORG, has_embedding=self.has_embedding)

    async def dismissed_ids(self, pool, target_bug_id):  # noqa: ANN001
        return set(self.dismissed)

    async def find_similar(self, pool, target_bug_id, organization_id, min_similarity, max_results):  # noqa: ANN001
        self.index_calls.append((target_bug_id, organization_id, min_similarity, max_results))
        if self.index_delay:
            await asyncio.sleep(self.index_delay)
        if self.index_error is not None:
            raise self.index_error
        ranked = sorted(
            (c for c in self.candidates if c.similarity >= min_similarity),
            key=lambda c: -c.similarity,
        )
        return ranked[:max_results]

    async def application_names(self, pool, application_ids):  # noqa: ANN001
        ids = list(application_ids)
        self.name_lookups.append(ids)
        if self.names_error is not None:
            raise self.names_error
        return {app_id: self.names[app_id] for app_id in ids if app_id in self.names}


@pytest.fixture
def install(monkeypatch):
    def _install(tracker: FakeTracker) -> FakeTracker:
        monkeypatch.setattr(similarity.bug_store, "require_visible_bug", tracker.require_visible_bug)
        monkeypatch.setattr(similarity.bug_store, "application_names", tracker.application_names)
        monkeypatch.setattr(similarity.feedback, "dismissed_ids", tracker.dismissed_ids)
        monkeypatch.setattr(similarity.similarity_index, "find_similar", tracker.find_similar)
        return tracker
    return _install


def ids(bugs) -> list[str]:  # noqa: ANN001
    return [bug.id for bug in bugs]


@pytest.mark.asyncio
async def test_bug_without_embedding_returns_empty_tiers(install):
    tracker = install(FakeTracker(has_embedding=False, candidates=[candidate("b", 0.95)]))

    response = await similarity.get_similar_bugs(object(), "a", PRINCIPAL)

    assert response.has_embedding is False
    assert response.bug_id == "a"
    assert response.similar_bugs.possibleDuplicates == []
    assert response.similar_bugs.relatedBugs == []
    assert tracker.index_calls == []


@pytest.mark.asyncio
async def test_missing_target_raises_not_found(install):
    tracker = install(FakeTracker(exists=False))

    with pytest.raises(NotFound):
        await similarity.get_similar_bugs(object(), "missing", PRINCIPAL)

    assert tracker.index_calls == []


@pytest.mark.asyncio
async def test_single_close_neighbour_is_a_possible_duplicate(install):
    install(FakeTracker(candidates=[candidate("b", 0.95)]))

    response = await similarity.get_similar_bugs(object(), "a", PRINCIPAL)

    assert response.has_embedding is True
    assert ids(response.similar_bugs.possibleDuplicates) == ["b"]
    assert response.similar_bugs.relatedBugs == []
    duplicate = response.similar_bugs.possibleDuplicates[0]
    assert duplicate.application_name == "Checkout"
    assert duplicate.display_id == "BUG-b"
    assert duplicate.similarity == pytest.approx(0.95)


@pytest.mark.asyncio
async def test_dismissed_suggestions_are_filtered_and_fetch_is_widened(install):
    tracker = install(FakeTracker(candidates=[candidate("b", 0.95), candidate("c", 0.8)], dismissed={"b"}))

    response = await similarity.get_similar_bugs(object(), "a", PRINCIPAL)

    assert response.similar_bugs.possibleDuplicates == []
    assert ids(response.similar_bugs.relatedBugs) == ["c"]
    assert tracker.index_calls == [("a", ORG, similarity.RELATED_THRESHOLD, 7)]


@pytest.mark.asyncio
async def test_duplicate_tier_is_capped_at_three(install):
    scores = {"b": 0.95, "c": 0.93, "d": 0.91, "e": 0.90}
    install(FakeTracker(candidates=[candidate(bug_id, score) for bug_id, score in scores.items()]))

    response = await similarity.get_similar_bugs(object(), "a", PRINCIPAL)

    assert ids(response.similar_bugs.possibleDuplicates) == ["b", "c", "d"]
    assert response.similar_bugs.relatedBugs == []


@pytest.mark.asyncio
async def test_tiers_are_disjoint_and_split_at_thresholds(install):
    install(FakeTracker(candidates=[
        candidate("dup", 0.9),
        candidate("upper-related", 0.8999),
        candidate("lower-related", 0.7),
        candidate("too-far", 0.69),
    ]))

    response = await similarity.get_similar_bugs(object(), "a", PRINCIPAL)

    duplicates = response.similar_bugs.possibleDuplicates
    related = response.similar_bugs.relatedBugs
    assert ids(duplicates) == ["dup"]
    assert ids(related) == ["upper-related", "lower-related"]
    assert not set(ids(duplicates)) & set(ids(related))
    assert all(bug.similarity >= similarity.RELATED_THRESHOLD for bug in duplicates + related)


def test_partition_breaks_ties_by_most_recent():
    older = candidate("older", 0.8, age_days=10)
    newer = candidate("newer", 0.8, age_days=1)
    best = candidate("best", 0.85, age_days=30)

    duplicates, related = similarity.partition_tiers([older, newer, best, candidate("low", 0.5)])

    assert duplicates == []
    assert [c.bug_id for c in related] == ["best", "newer", "older"]


@pytest.mark.asyncio
async def test_application_lookup_is_batched_and_degrades_to_unknown(install):
    other_app = "c2a1e7d4-6b5f-4a3e-8d2c-1b0a9f8e7d6c"
    tracker = install(FakeTracker(
        candidates=[candidate("b", 0.95), candidate("c", 0.8, app=other_app), candidate("d", 0.75, app=None)],
        names={APP: "Checkout"},
    ))

    response = await similarity.get_similar_bugs(object(), "a", PRINCIPAL)

    assert len(tracker.name_lookups) == 1
    related = {bug.id: bug.application_name for bug in response.similar_bugs.relatedBugs}
    assert related == {"c": "Unknown", "d": "Unknown"}
    assert response.similar_bugs.possibleDuplicates[0].application_name == "Checkout"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [OSError("connection reset"), asyncpg.InterfaceError("pool is closing")],
)
async def test_application_lookup_failure_keeps_results(install, error):
    install(FakeTracker(candidates=[candidate("b", 0.95)], names_error=error))

    response = await similarity.get_similar_bugs(object(), "a", PRINCIPAL)

    assert ids(response.similar_bugs.possibleDuplicates) == ["b"]
    assert response.similar_bugs.possibleDuplicates[0].application_name == "Unknown"


@pytest.mark.asyncio
async def test_index_failure_propagates(install):
    install(FakeTracker(candidates=[candidate("b", 0.95)], index_error=IndexUnavailable()))

    with pytest.raises(IndexUnavailable):
        await similarity.get_similar_bugs(object(), "a", PRINCIPAL)


@pytest.mark.asyncio
async def test_deadline_cancels_the_whole_query(install):
    install(FakeTracker(candidates=[candidate("b", 0.95)], index_delay=1.0))

    with pytest.raises(Cancelled):
        await similarity.get_similar_bugs(object(), "a", PRINCIPAL, timeout=0.01)


@pytest.mark.asyncio
async def test_underfilled_tiers_trigger_a_wider_query(install):
    dismissed = {"x1", "x2"}
    candidates = [candidate("x1", 0.99), candidate("x2", 0.98)]
    candidates += [candidate(f"d{i}", 0.97 - i * 0.01) for i in range(6)]
    candidates += [candidate("r1", 0.8), candidate("r2", 0.79), candidate("r3", 0.78)]
    tracker = install(FakeTracker(candidates=candidates, dismissed=dismissed))

    response = await similarity.get_similar_bugs(object(), "a", PRINCIPAL)

    assert [call[3] for call in tracker.index_calls] == [8, 16]
    assert ids(response.similar_bugs.possibleDuplicates) == ["d0", "d1", "d2"]
    assert ids(response.similar_bugs.relatedBugs) == ["r1", "r2", "r3"]


@pytest.mark.asyncio
async def test_wider_query_is_bounded(install):
    candidates = [candidate(f"d{i:02d}", 0.99 - i * 0.001) for i in range(60)]
    tracker = install(FakeTracker(candidates=candidates))

    response = await similarity.get_similar_bugs(object(), "a", PRINCIPAL)

    assert len(tracker.index_calls) == similarity.MAX_FETCH_ROUNDS
    assert len(response.similar_bugs.possibleDuplicates) == similarity.MAX_RESULTS_PER_TIER
    assert response.similar_bugs.relatedBugs == []
