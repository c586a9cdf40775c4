from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storefront.core.errors import Forbidden, InternalError, InvalidRequest, NotFound, Unauthenticated
from storefront.db import Base
from storefront.models import DemoClaim
from storefront.schemas import DownloadRequestIn
from storefront.services.download_issuer import DownloadIssuer
from storefront.services.entitlements import ClaimOutcome, EntitlementStore, StoreError
from tests.fakes import FakeIdentityProvider, FakeSigner, add_download, add_purchase, minutes_ago


def _request(game_slug="cyber-racer", kind="full", device="windows") -> DownloadRequestIn:
    return DownloadRequestIn.from_body({"game_slug": game_slug, "kind": kind, "device": device})


def _claim_count(session_factory, user_id: str, game_slug: str) -> int:
    with session_factory() as db:
        return (
            db.query(DemoClaim)
            .filter(DemoClaim.user_id == user_id, DemoClaim.game_slug == game_slug)
            .count()
        )


class RecordingStore(EntitlementStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.calls: list[str] = []

    def find_purchase(self, user_id, game_slug):
        self.calls.append("find_purchase")
        return super().find_purchase(user_id, game_slug)

    def find_demo_claim(self, user_id, game_slug):
        self.calls.append("find_demo_claim")
        return super().find_demo_claim(user_id, game_slug)

    def insert_demo_claim_if_absent(self, user_id, game_slug):
        self.calls.append("insert_demo_claim_if_absent")
        return super().insert_demo_claim_if_absent(user_id, game_slug)


class BrokenStore(EntitlementStore):
    def find_purchase(self, user_id, game_slug):
        raise StoreError("connection reset")

    def find_demo_claim(self, user_id, game_slug):
        raise StoreError("connection reset")


class FailingClaimStore(EntitlementStore):
    def insert_demo_claim_if_absent(self, user_id, game_slug):
        return ClaimOutcome.FAILED


class BrokenTargetStore(EntitlementStore):
    def find_latest_download_target(self, game_slug, kind, device):
        raise StoreError("statement timeout")


@pytest.mark.parametrize(
    "payload",
    [
        {"game_slug": "cyber-racer", "kind": "full", "device": "windows"},
        {"game_slug": "cyber-racer", "kind": "weird", "device": "windows"},
        {},
    ],
)
def test_missing_token_is_unauthenticated_regardless_of_payload(issuer, identity, payload) -> None:
    with pytest.raises(Unauthenticated) as exc_info:
        issuer.issue(None, DownloadRequestIn.from_body(payload))

    assert exc_info.value.message == "Missing bearer token"
    assert identity.calls == []


def test_rejected_token_is_unauthenticated(issuer) -> None:
    with pytest.raises(Unauthenticated) as exc_info:
        issuer.issue("forged", _request())
    assert exc_info.value.message == "Invalid or expired token"


def test_identity_outage_is_internal_error(store, signer) -> None:
    issuer = DownloadIssuer(FakeIdentityProvider(outage=True), store, signer)
    with pytest.raises(InternalError):
        issuer.issue("token-u1", _request())


@pytest.mark.parametrize("missing", ["game_slug", "kind", "device"])
def test_missing_field_is_invalid_request(issuer, missing) -> None:
    body = {"game_slug": "cyber-racer", "kind": "full", "device": "windows"}
    body[missing] = "   "

    with pytest.raises(InvalidRequest) as exc_info:
        issuer.issue("token-u1", DownloadRequestIn.from_body(body))
    assert exc_info.value.message == "Missing required fields: game_slug, kind, device"


def test_unknown_kind_never_reaches_entitlement_checks(session_factory, identity, signer) -> None:
    store = RecordingStore(session_factory)
    issuer = DownloadIssuer(identity, store, signer)

    with pytest.raises(InvalidRequest) as exc_info:
        issuer.issue("token-u1", _request(kind="FULL"))

    assert exc_info.value.message == "Invalid kind; expected 'full' or 'demo'"
    assert store.calls == []


def test_full_download_without_purchase_is_forbidden(issuer, session_factory, signer) -> None:
    add_download(session_factory, "crystal-realm", "full", "windows", "crystal/win.zip")

    with pytest.raises(Forbidden) as exc_info:
        issuer.issue("token-u2", _request(game_slug="crystal-realm"))

    assert exc_info.value.message == "No valid purchase for this game"
    assert signer.calls == []


def test_full_download_with_purchase_returns_signed_url(issuer, session_factory, signer) -> None:
    add_purchase(session_factory, "U1", "cyber-racer")
    add_download(session_factory, "cyber-racer", "full", "windows", "cyber-racer/win/v1.zip")

    issued = issuer.issue("token-u1", _request())

    assert issued.url == "https://objects.example/sign/cyber-racer/win/v1.zip?ttl=900"
    assert issued.expires_in == 900
    assert signer.calls == [("cyber-racer/win/v1.zip", 900)]


def test_purchase_of_other_user_does_not_entitle(issuer, session_factory) -> None:
    add_purchase(session_factory, "U1", "cyber-racer")
    add_download(session_factory, "cyber-racer", "full", "windows", "cyber-racer/win/v1.zip")

    with pytest.raises(Forbidden):
        issuer.issue("token-u2", _request())


def test_store_fault_during_purchase_check_is_not_forbidden(session_factory, identity, signer) -> None:
    issuer = DownloadIssuer(identity, BrokenStore(session_factory), signer)

    with pytest.raises(InternalError) as exc_info:
        issuer.issue("token-u1", _request())
    assert exc_info.value.message == "Authorization check failed"

    with pytest.raises(InternalError):
        issuer.issue("token-u1", _request(kind="demo"))


def test_entitled_but_unregistered_target_is_not_found(issuer, session_factory) -> None:
    add_purchase(session_factory, "U1", "cyber-racer")
    add_download(session_factory, "cyber-racer", "full", "linux", "cyber-racer/linux.tar.gz")

    with pytest.raises(NotFound) as exc_info:
        issuer.issue("token-u1", _request(device="mac"))
    assert exc_info.value.message == "No download configured for this target"


def test_blank_storage_path_is_not_found(issuer, session_factory) -> None:
    add_purchase(session_factory, "U1", "cyber-racer")
    add_download(session_factory, "cyber-racer", "full", "windows", "   ")

    with pytest.raises(NotFound):
        issuer.issue("token-u1", _request())


def test_latest_registration_wins(issuer, session_factory, signer) -> None:
    add_purchase(session_factory, "U1", "cyber-racer")
    add_download(session_factory, "cyber-racer", "full", "windows", "builds/v1.zip", minutes_ago(60))
    add_download(session_factory, "cyber-racer", "full", "windows", "builds/v3.zip", minutes_ago(1))
    add_download(session_factory, "cyber-racer", "full", "windows", "builds/v2.zip", minutes_ago(30))

    issuer.issue("token-u1", _request())

    assert signer.calls[-1][0] == "builds/v3.zip"


def test_target_lookup_fault_is_internal_error(session_factory, identity, signer) -> None:
    add_purchase(session_factory, "U1", "cyber-racer")
    issuer = DownloadIssuer(identity, BrokenTargetStore(session_factory), signer)

    with pytest.raises(InternalError) as exc_info:
        issuer.issue("token-u1", _request())
    assert exc_info.value.message == "Failed to resolve download"


def test_signing_failure_is_internal_error(session_factory, identity, store) -> None:
    add_purchase(session_factory, "U1", "cyber-racer")
    add_download(session_factory, "cyber-racer", "full", "windows", "cyber-racer/win.zip")
    issuer = DownloadIssuer(identity, store, FakeSigner(fail=True))

    with pytest.raises(InternalError) as exc_info:
        issuer.issue("token-u1", _request())
    assert exc_info.value.message == "Failed to create signed URL"


def test_repeated_demo_request_records_one_claim(issuer, session_factory, signer) -> None:
    add_download(session_factory, "crystal-realm", "demo", "windows", "crystal/demo.zip")
    request = _request(game_slug="crystal-realm", kind="demo")

    first = issuer.issue("token-u2", request)
    second = issuer.issue("token-u2", request)

    assert first.url == second.url
    assert _claim_count(session_factory, "U2", "crystal-realm") == 1
    assert len(signer.calls) == 2


def test_demo_claim_is_recorded_before_target_resolution(issuer, session_factory) -> None:
    with pytest.raises(NotFound):
        issuer.issue("token-u1", _request(game_slug="crystal-realm", kind="demo"))

    assert _claim_count(session_factory, "U1", "crystal-realm") == 1


def test_demo_does_not_need_a_purchase_and_full_does_not_need_a_claim(issuer, session_factory) -> None:
    add_download(session_factory, "crystal-realm", "demo", "windows", "crystal/demo.zip")
    add_download(session_factory, "crystal-realm", "full", "windows", "crystal/full.zip")

    issuer.issue("token-u1", _request(game_slug="crystal-realm", kind="demo"))
    with pytest.raises(Forbidden):
        issuer.issue("token-u1", _request(game_slug="crystal-realm", kind="full"))


def test_failed_claim_insert_still_issues_by_default(session_factory, identity, signer) -> None:
    add_download(session_factory, "crystal-realm", "demo", "windows", "crystal/demo.zip")
    issuer = DownloadIssuer(identity, FailingClaimStore(session_factory), signer)

    issued = issuer.issue("token-u1", _request(game_slug="crystal-realm", kind="demo"))

    assert issued.url.startswith("https://objects.example/sign/crystal/demo.zip")


def test_failed_claim_insert_blocks_issuance_when_fail_closed(session_factory, identity, signer) -> None:
    add_download(session_factory, "crystal-realm", "demo", "windows", "crystal/demo.zip")
    issuer = DownloadIssuer(
        identity,
        FailingClaimStore(session_factory),
        signer,
        demo_claim_fail_closed=True,
    )

    with pytest.raises(InternalError) as exc_info:
        issuer.issue("token-u1", _request(game_slug="crystal-realm", kind="demo"))
    assert exc_info.value.message == "Demo claim could not be recorded"
    assert signer.calls == []


class RacingStore(EntitlementStore):
    """Every caller sees "no claim yet" before any of them inserts."""

    def __init__(self, session_factory, parties: int):
        super().__init__(session_factory)
        self.barrier = threading.Barrier(parties, timeout=10)
        self.outcomes: list[ClaimOutcome] = []
        self._lock = threading.Lock()

    def find_demo_claim(self, user_id, game_slug):
        claim = super().find_demo_claim(user_id, game_slug)
        self.barrier.wait()
        return claim

    def insert_demo_claim_if_absent(self, user_id, game_slug):
        outcome = super().insert_demo_claim_if_absent(user_id, game_slug)
        with self._lock:
            self.outcomes.append(outcome)
        return outcome


def test_concurrent_first_claims_record_one_row_and_all_succeed(tmp_path, identity, signer) -> None:
    parties = 6
    engine = create_engine(
        f"sqlite:///{(tmp_path / 'race.db').as_posix()}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    add_download(session_factory, "crystal-realm", "demo", "windows", "crystal/demo.zip")
    store = RacingStore(session_factory, parties)
    issuer = DownloadIssuer(identity, store, signer)
    request = _request(game_slug="crystal-realm", kind="demo")

    try:
        with ThreadPoolExecutor(max_workers=parties) as pool:
            futures = [pool.submit(issuer.issue, "token-u1", request) for _ in range(parties)]
            results = [future.result(timeout=30) for future in futures]

        assert len(results) == parties
        assert all(result.url for result in results)
        assert _claim_count(session_factory, "U1", "crystal-realm") == 1
        assert store.outcomes.count(ClaimOutcome.CREATED) == 1
    finally:
        engine.dispose()
