from datetime import date, timedelta

import pytest

from blindmatch.services.proposals import (
    DECLINED_ACK_MESSAGE,
    PARTNER_DECLINED_MESSAGE,
    STILL_SEARCHING_MESSAGE,
    WAITING_ON_OTHER_MESSAGE,
    build_proposal,
    propose_for,
    read_proposal,
    respond_to_proposal,
)
from blindmatch.services.scoring import ScoredCandidate

from conftest import NOW, TODAY, FakeNotifier


def _pair(store, **man_overrides):
    woman = store.add_user(
        "+15550000001",
        name="Ana",
        birth_date=date(1997, 1, 1),
        embedding=[1.0, 0.0],
        values=["hiking travel cooking"],
    )
    man_kwargs = dict(
        name="Ben",
        birth_date=date(1995, 1, 1),
        gender="man",
        accepted_genders=("woman",),
        embedding=[0.8, 0.6],
        values=["hiking travel music"],
    )
    man_kwargs.update(man_overrides)
    man = store.add_user("+15550000002", **man_kwargs)
    return woman, man


def test_viable_pair_creates_one_proposal_and_notifies_both(store, notifier):
    woman, man = _pair(store)

    outcome = propose_for(store, notifier, woman["id"], TODAY, NOW)

    assert outcome.status == "proposed"
    assert len(outcome.proposal_ids) == 1
    proposal = store.get_proposal(outcome.proposal_ids[0])
    assert proposal["user1_id"] == woman["id"]
    assert proposal["user2_id"] == man["id"]
    assert proposal["status"] == "proposed"
    assert proposal["user1_response"] == proposal["user2_response"] == "pending"
    assert proposal["score"] == pytest.approx(0.78)
    assert proposal["expires_at"] == NOW + timedelta(hours=2)
    assert proposal["proposed_time"] == "19:00"
    assert len(notifier.bodies_to(woman["phone"])) == 1
    assert len(notifier.bodies_to(man["phone"])) == 1


def test_weak_pair_gets_still_searching_instead_of_proposal(store, notifier):
    woman, _ = _pair(store, embedding=None, city="Dallas")

    outcome = propose_for(store, notifier, woman["id"], TODAY, NOW)

    assert outcome.status == "no_candidates"
    assert store.proposals == {}
    assert notifier.bodies_to(woman["phone"]) == [STILL_SEARCHING_MESSAGE]


def test_propose_for_runs_once_per_user_per_day(store, notifier):
    woman, man = _pair(store)
    propose_for(store, notifier, woman["id"], TODAY, NOW)

    again = propose_for(store, notifier, woman["id"], TODAY, NOW)
    other_side = propose_for(store, notifier, man["id"], TODAY, NOW)

    assert again.status == "skipped" and again.reason == "already_proposed_today"
    assert other_side.status == "skipped"
    assert len(store.proposals) == 1


def test_top_n_caps_proposals(store, notifier):
    woman = store.add_user("+15550000001", embedding=[1.0, 0.0])
    for i in range(5):
        store.add_user(f"+1555000010{i}", gender="man", accepted_genders=("woman",), birth_date=date(1994, 1, 1), embedding=[1.0, 0.0])

    outcome = propose_for(store, notifier, woman["id"], TODAY, NOW, top_n=3)

    assert len(outcome.proposal_ids) == 3


def test_notification_failure_keeps_proposal(store):
    notifier = FakeNotifier(fail_for={"+15550000002"})
    woman, man = _pair(store)

    outcome = propose_for(store, notifier, woman["id"], TODAY, NOW)

    assert outcome.status == "proposed"
    assert len(store.proposals) == 1
    failed = [m for m in store.messages if m["status"] == "failed"]
    assert [m["user_id"] for m in failed] == [man["id"]]


def test_build_proposal_rejects_self_pair():
    scored = ScoredCandidate(user_id="u1", score=0.9, vector_similarity=1.0, preference_match=1.0, values_overlap=0.5)
    with pytest.raises(ValueError):
        build_proposal("u1", scored, TODAY, NOW)


def test_both_yes_accepts_and_notifies_both(store, notifier):
    woman, man = _pair(store)
    pid = propose_for(store, notifier, woman["id"], TODAY, NOW).proposal_ids[0]

    first = respond_to_proposal(store, notifier, woman, "yes", NOW + timedelta(minutes=5))
    assert first["status"] == "proposed"
    assert notifier.bodies_to(woman["phone"])[-1] == WAITING_ON_OTHER_MESSAGE

    second = respond_to_proposal(store, notifier, man, "yes", NOW + timedelta(minutes=10))
    assert second["status"] == "accepted"
    assert store.get_proposal(pid)["status"] == "accepted"
    assert notifier.bodies_to(woman["phone"])[-1].startswith("It's a date!")
    assert notifier.bodies_to(man["phone"])[-1].startswith("It's a date!")


def test_single_no_declines_immediately(store, notifier):
    woman, man = _pair(store)
    pid = propose_for(store, notifier, woman["id"], TODAY, NOW).proposal_ids[0]

    row = respond_to_proposal(store, notifier, man, "no", NOW + timedelta(minutes=1))

    assert row["status"] == "declined"
    assert store.get_proposal(pid)["status"] == "declined"
    assert notifier.bodies_to(man["phone"])[-1] == DECLINED_ACK_MESSAGE
    assert notifier.bodies_to(woman["phone"])[-1] == PARTNER_DECLINED_MESSAGE
    assert respond_to_proposal(store, notifier, woman, "yes", NOW + timedelta(minutes=2)) is None


def test_expired_proposal_is_written_back_and_never_revives(store, notifier):
    woman, _ = _pair(store)
    pid = propose_for(store, notifier, woman["id"], TODAY, NOW).proposal_ids[0]
    late = NOW + timedelta(hours=3)

    assert respond_to_proposal(store, notifier, woman, "yes", late) is None
    assert store.get_proposal(pid)["status"] == "expired"
    for _ in range(3):
        assert read_proposal(store, pid, late)["status"] == "expired"
    assert read_proposal(store, pid, NOW)["status"] == "expired"


def test_user_paired_today_is_not_offered_to_another_requester(store, notifier):
    ana, ben = _pair(store)
    eva = store.add_user("+15550000003", name="Eva", birth_date=date(1996, 1, 1), embedding=[0.9, 0.1], values=["hiking music"])

    propose_for(store, notifier, ana["id"], TODAY, NOW)
    outcome = propose_for(store, notifier, eva["id"], TODAY, NOW)

    assert outcome.status == "no_candidates"
    involving_ben = [p for p in store.proposals.values() if ben["id"] in (p["user1_id"], p["user2_id"])]
    assert len(involving_ben) == 1
    assert len(notifier.bodies_to(ben["phone"])) == 1
    assert notifier.bodies_to(eva["phone"]) == [STILL_SEARCHING_MESSAGE]


def test_candidate_claimed_mid_run_falls_through_to_next(store, notifier, monkeypatch):
    ana, ben = _pair(store)
    eva = store.add_user("+15550000003", name="Eva", birth_date=date(1996, 1, 1), embedding=[0.8, 0.6])
    cal = store.add_user(
        "+15550000004",
        name="Cal",
        birth_date=date(1995, 1, 1),
        gender="man",
        accepted_genders=("woman",),
        embedding=[0.6, 0.8],
    )
    stale_pool = store.fetch_candidate_pool(TODAY)
    propose_for(store, notifier, ana["id"], TODAY, NOW, top_n=1)
    monkeypatch.setattr(store, "fetch_candidate_pool", lambda day: stale_pool)

    outcome = propose_for(store, notifier, eva["id"], TODAY, NOW)

    assert outcome.status == "proposed"
    assert [store.get_proposal(pid)["user2_id"] for pid in outcome.proposal_ids] == [cal["id"]]
    assert len(notifier.bodies_to(ben["phone"])) == 1
