import threading
from contextlib import contextmanager
from decimal import Decimal

import pytest

from secureprint.config import settings
from secureprint.errors import (
    AlreadyReleased,
    Conflict,
    FileTooLarge,
    IllegalTransition,
    InvalidPrintToken,
    InvalidToken,
    JobNotFound,
    LinkExpired,
    RateLimited,
    StorageError,
    Tampered,
    ValidationError,
)
from secureprint.services.job_repository import JobRepository
from secureprint.services.lifecycle import (
    LifecycleManager,
    PrintOptions,
    Upload,
    compute_cost,
    resolve_public_base,
)
from secureprint.services.sweeper import Sweeper
from secureprint.utils.timestamps import from_iso

from conftest import PDF_BYTES


class TestCost:
    def test_happy_path_cost(self):
        assert compute_cost(2, 3, False, True) == Decimal("0.48")

    @pytest.mark.parametrize("pages", [1, 3, 17])
    @pytest.mark.parametrize("copies", [1, 2, 13])
    @pytest.mark.parametrize("color", [False, True])
    @pytest.mark.parametrize("duplex", [False, True])
    def test_cost_matches_formula(self, pages, copies, color, duplex):
        expected = round(0.10 * pages * copies * (2 if color else 1) * (0.8 if duplex else 1), 2)
        assert float(compute_cost(pages, copies, color, duplex)) == pytest.approx(expected)

    def test_cost_is_rounded_to_cents(self):
        assert compute_cost(1, 1, False, False, base_cost=Decimal("0.105")) == Decimal("0.11")


class TestPublicBase:
    def test_configured_url_wins(self, monkeypatch):
        monkeypatch.setattr(settings, "public_base_url", "https://print.example.org/")
        assert resolve_public_base("proxy.example", "https", "http://testserver/") == "https://print.example.org"

    def test_forwarded_host(self, monkeypatch):
        monkeypatch.setattr(settings, "public_base_url", None)
        assert resolve_public_base("proxy.example, inner", "https", "http://testserver/") == "https://proxy.example"

    def test_request_base(self, monkeypatch):
        monkeypatch.setattr(settings, "public_base_url", None)
        assert resolve_public_base(None, None, "http://testserver/") == "http://testserver"


class TestSubmit:
    def test_submit_persists_everything(self, lifecycle, db, make_job, uploads_dir):
        job_id, token, link = make_job(pages=2, copies=3, duplex=True)
        job = JobRepository(db).get_job(job_id)
        assert job.status == "pending"
        assert job.cost == pytest.approx(0.48)
        assert len(token) >= 43
        assert link == f"https://print.example/release/{job_id}?token={token}"
        assert job.release_link == link

        document = JobRepository(db).get_document(job_id)
        blob = (uploads_dir / document.stored_path).read_bytes()
        assert blob != PDF_BYTES
        assert blob == document.content
        assert PDF_BYTES not in blob

        entry = lifecycle.index.get(job_id)
        assert entry.token == token
        assert entry.file_path == document.stored_path
        assert not lifecycle.index.is_active(job_id)

    def test_expires_at(self, lifecycle, db, make_job, clock):
        job_id, _, _ = make_job(minutes=15)
        assert lifecycle.index.get(job_id).expires_at == clock.now + 15 * 60
        assert JobRepository(db).get_job(job_id).expires_at == "2023-11-14T22:28:20.000Z"

    def test_tokens_are_unique(self, make_job):
        tokens = {make_job()[1] for _ in range(20)}
        assert len(tokens) == 20

    @pytest.mark.parametrize("kwargs", [
        {"user_id": ""},
        {"user_id": "   "},
        {"content": b""},
        {"pages": 0},
        {"copies": -1},
        {"minutes": 0},
        {"minutes": 24 * 60 + 1},
    ])
    def test_rejects_invalid_input(self, make_job, uploads_dir, kwargs):
        with pytest.raises(ValidationError):
            make_job(**kwargs)
        assert list(uploads_dir.iterdir()) == []

    def test_missing_upload(self, lifecycle, db):
        with pytest.raises(ValidationError):
            lifecycle.submit(db, "alice", "a.pdf", None, "https://print.example")

    def test_too_large(self, make_job, monkeypatch, uploads_dir):
        monkeypatch.setattr(settings, "max_upload_bytes", 8)
        with pytest.raises(FileTooLarge):
            make_job(content=b"x" * 9)
        assert list(uploads_dir.iterdir()) == []

    def test_failed_insert_removes_blob(self, make_job, monkeypatch, uploads_dir, lifecycle):
        def clash(self, job, document=None, analyses=()):
            raise Conflict()

        monkeypatch.setattr(JobRepository, "insert_job", clash)
        with pytest.raises(Conflict):
            make_job()
        assert list(uploads_dir.iterdir()) == []
        assert len(lifecycle.index) == 0

    def test_analysis_recorded(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        detail = lifecycle.inspect(db, job_id, token)
        assert detail.analysis["byte_size"] == len(PDF_BYTES)
        assert detail.analysis["pdf_header_valid"] is True


class TestValidate:
    def test_wrong_token(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        wrong = token[:-1] + ("A" if token[-1] != "A" else "B")
        with pytest.raises(InvalidToken):
            lifecycle.validate(db, job_id, wrong)
        with pytest.raises(InvalidToken):
            lifecycle.validate(db, job_id, None)

    def test_unknown_job(self, lifecycle, db):
        with pytest.raises(JobNotFound):
            lifecycle.validate(db, "missing", "token")

    def test_expired_at_deadline(self, lifecycle, db, make_job, clock, uploads_dir):
        job_id, token, _ = make_job(minutes=1)
        clock.advance(60)
        with pytest.raises(LinkExpired):
            lifecycle.inspect(db, job_id, token)
        assert JobRepository(db).get_status(job_id) == "deleted"
        assert JobRepository(db).get_document(job_id) is None
        assert list(uploads_dir.iterdir()) == []
        assert job_id not in lifecycle.index

    def test_expired_after_restart(self, lifecycle, db, make_job, clock):
        job_id, token, _ = make_job(minutes=1)
        lifecycle.index.clear()
        assert lifecycle.validate(db, job_id, token).id == job_id
        clock.advance(61)
        with pytest.raises(LinkExpired):
            lifecycle.validate(db, job_id, token)
        assert JobRepository(db).get_status(job_id) == "deleted"

    def test_wrong_token_on_unindexed_job(self, lifecycle, db, make_job):
        job_id, _, _ = make_job()
        lifecycle.index.clear()
        with pytest.raises(InvalidToken):
            lifecycle.validate(db, job_id, "x" * 43)


class TestDocumentAccess:
    def test_inspect_decrypts(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        detail = lifecycle.inspect(db, job_id, token)
        assert detail.document.content == PDF_BYTES
        assert detail.document.mime_type == "application/pdf"
        assert detail.document.size == len(PDF_BYTES)
        assert not lifecycle.index.is_active(job_id)

    def test_missing_blob_falls_back_to_row(self, lifecycle, db, make_job, uploads_dir):
        job_id, token, _ = make_job()
        for path in uploads_dir.iterdir():
            path.unlink()
        assert lifecycle.fetch_document(db, job_id, token).content == PDF_BYTES

    def test_tampered_blob_quarantines_job(self, lifecycle, db, make_job, uploads_dir):
        job_id, token, _ = make_job()
        blob_path = uploads_dir / JobRepository(db).get_document(job_id).stored_path
        data = bytearray(blob_path.read_bytes())
        data[0] ^= 0x01
        blob_path.chmod(0o600)
        blob_path.write_bytes(bytes(data))

        with pytest.raises(Tampered):
            lifecycle.fetch_document(db, job_id, token)
        assert JobRepository(db).get_status(job_id) == "deleted"
        assert not blob_path.exists()

    def test_fetch_after_release(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        lifecycle.release(db, job_id, token)
        with pytest.raises(AlreadyReleased):
            lifecycle.fetch_document(db, job_id, token)
        detail = lifecycle.inspect(db, job_id, token)
        assert detail.job.status == "released"
        assert detail.document is None

    @pytest.fixture
    def release_after_validate(self, lifecycle, session_factory, monkeypatch):
        """Release the job from another session right after the next validation passes."""
        real_validate = lifecycle.validate
        fired = []

        def validate_then_release(db, job_id, token):
            job = real_validate(db, job_id, token)
            if not fired:
                fired.append(job_id)
                other = session_factory()
                try:
                    lifecycle.release(other, job_id, token)
                finally:
                    other.close()
            return job

        monkeypatch.setattr(lifecycle, "validate", validate_then_release)
        return fired

    def test_inspect_released_mid_read(self, lifecycle, db, make_job, release_after_validate):
        job_id, token, _ = make_job()
        detail = lifecycle.inspect(db, job_id, token)
        assert release_after_validate == [job_id]
        assert detail.document is None
        assert detail.job.status == "released"

    def test_fetch_released_mid_read(self, lifecycle, db, make_job, release_after_validate):
        job_id, token, _ = make_job()
        with pytest.raises(AlreadyReleased):
            lifecycle.fetch_document(db, job_id, token)
        assert release_after_validate == [job_id]

    def test_view_released_mid_read(self, lifecycle, session_factory, db, make_job, monkeypatch):
        job_id, token, _ = make_job()
        real_writing = lifecycle._writing
        fired = []

        @contextmanager
        def writing_then_release(session, target):
            with real_writing(session, target):
                yield
            if not fired:
                fired.append(target)
                other = session_factory()
                try:
                    lifecycle.release(other, job_id, token)
                finally:
                    other.close()

        monkeypatch.setattr(lifecycle, "_writing", writing_then_release)
        result = lifecycle.record_view(db, job_id, token)
        assert fired == [job_id]
        assert result.document is None
        assert result.view_count == 1
        assert result.job.status == "released"

    def test_pending_job_without_document(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        JobRepository(db).delete_document(job_id)
        db.commit()
        with pytest.raises(StorageError):
            lifecycle.fetch_document(db, job_id, token)


class TestPrintTokens:
    def test_issue_and_redeem(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        grant = lifecycle.issue_print_token(db, job_id, token, "10.0.0.2")
        assert grant.token != token
        assert job_id in lifecycle.print_tokens

        document = lifecycle.redeem_print_token(db, job_id, grant.token)
        assert document.content == PDF_BYTES
        with pytest.raises(InvalidPrintToken):
            lifecycle.redeem_print_token(db, job_id, grant.token)

    def test_issue_needs_release_token(self, lifecycle, db, make_job):
        job_id, _, _ = make_job()
        with pytest.raises(InvalidToken):
            lifecycle.issue_print_token(db, job_id, "wrong", "10.0.0.2")
        assert job_id not in lifecycle.print_tokens

    def test_redeem_expired(self, lifecycle, db, make_job, clock):
        job_id, token, _ = make_job()
        grant = lifecycle.issue_print_token(db, job_id, token, "10.0.0.2")
        clock.advance(lifecycle.print_tokens.ttl_seconds)
        with pytest.raises(InvalidPrintToken):
            lifecycle.redeem_print_token(db, job_id, grant.token)

    def test_redeem_requires_token(self, lifecycle, db, make_job):
        job_id, _, _ = make_job()
        with pytest.raises(ValidationError):
            lifecycle.redeem_print_token(db, job_id, None)

    def test_rate_limit(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        for _ in range(settings.print_token_rate_limit):
            lifecycle.issue_print_token(db, job_id, token, "10.0.0.2")
        with pytest.raises(RateLimited):
            lifecycle.issue_print_token(db, job_id, token, "10.0.0.2")
        assert not lifecycle.index.is_active(job_id)

    def test_release_discards_token(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        grant = lifecycle.issue_print_token(db, job_id, token, "10.0.0.2")
        lifecycle.release(db, job_id, token)
        assert job_id not in lifecycle.print_tokens
        with pytest.raises(InvalidPrintToken):
            lifecycle.redeem_print_token(db, job_id, grant.token)

    def test_expire_discards_token(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        lifecycle.issue_print_token(db, job_id, token, "10.0.0.2")
        assert lifecycle.expire(db, job_id)
        assert job_id not in lifecycle.print_tokens

    def test_redeem_after_link_expiry(self, lifecycle, db, make_job, clock):
        job_id, token, _ = make_job(minutes=1)
        clock.advance(30)
        grant = lifecycle.issue_print_token(db, job_id, token, "10.0.0.2")
        clock.advance(31)
        with pytest.raises(LinkExpired):
            lifecycle.redeem_print_token(db, job_id, grant.token)
        assert JobRepository(db).get_status(job_id) == "deleted"


class TestViews:
    def test_multi_view(self, lifecycle, db, make_job, clock):
        job_id, token, _ = make_job()
        stamps = []
        for i in range(5):
            clock.advance(10)
            result = lifecycle.record_view(db, job_id, token, user_id="alice")
            stamps.append(result.viewed_at)
            assert result.view_count == i + 1
            assert result.document.content == PDF_BYTES

        job = JobRepository(db).get_job(job_id)
        assert job.view_count == 5
        assert job.first_viewed_at == stamps[0]
        assert job.last_viewed_at == stamps[-1]
        assert JobRepository(db).count_views(job_id) == 5

    def test_view_after_release(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        lifecycle.release(db, job_id, token)
        with pytest.raises(AlreadyReleased):
            lifecycle.record_view(db, job_id, token)
        assert JobRepository(db).get_job(job_id).view_count == 0

    def test_view_after_expiry(self, lifecycle, db, make_job, clock):
        job_id, token, _ = make_job(minutes=1)
        clock.advance(120)
        with pytest.raises(LinkExpired):
            lifecycle.record_view(db, job_id, token)


class TestTransitions:
    def test_happy_path(self, lifecycle, db, make_job, clock, uploads_dir):
        job_id, token, _ = make_job(pages=2, copies=3, duplex=True, minutes=15)
        clock.advance(60)
        assert lifecycle.inspect(db, job_id, token).document is not None
        clock.advance(60)
        assert lifecycle.record_view(db, job_id, token).view_count == 1
        clock.advance(60)
        job = lifecycle.release(db, job_id, token, printer_id="printer-7", released_by="alice")

        assert job.status == "released"
        assert job.printer_id == "printer-7"
        assert job.released_by == "alice"
        assert job.released_at is not None
        assert JobRepository(db).get_document(job_id) is None
        assert list(uploads_dir.iterdir()) == []
        # entry stays until completion or sweep
        assert job_id in lifecycle.index

    def test_release_twice(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        lifecycle.release(db, job_id, token)
        with pytest.raises(AlreadyReleased):
            lifecycle.release(db, job_id, token)

    def test_release_wrong_token(self, lifecycle, db, make_job):
        job_id, _, _ = make_job()
        with pytest.raises(InvalidToken):
            lifecycle.release(db, job_id, "nope")
        assert JobRepository(db).get_status(job_id) == "pending"

    def test_release_after_expiry(self, lifecycle, db, make_job, clock):
        job_id, token, _ = make_job(minutes=1)
        clock.advance(61)
        with pytest.raises(LinkExpired):
            lifecycle.release(db, job_id, token)
        assert JobRepository(db).get_status(job_id) == "deleted"

    def test_concurrent_release(self, lifecycle, session_factory, make_job):
        job_id, token, _ = make_job()
        barrier = threading.Barrier(2)
        outcomes = []

        def attempt():
            session = session_factory()
            try:
                barrier.wait()
                job = lifecycle.release(session, job_id, token, printer_id="p1")
                outcomes.append(job.status)
            except AlreadyReleased as exc:
                outcomes.append(exc.message)
            finally:
                session.close()

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(outcomes) == ["Print job has already been released", "released"]

    def test_complete(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        lifecycle.release(db, job_id, token)
        job = lifecycle.complete(db, job_id)
        assert job.status == "completed"
        assert job.completed_at is not None
        assert job_id not in lifecycle.index

    def test_complete_requires_release(self, lifecycle, db, make_job):
        job_id, _, _ = make_job()
        with pytest.raises(IllegalTransition):
            lifecycle.complete(db, job_id)
        assert JobRepository(db).get_status(job_id) == "pending"

    def test_complete_twice(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        lifecycle.release(db, job_id, token)
        lifecycle.complete(db, job_id)
        with pytest.raises(IllegalTransition):
            lifecycle.complete(db, job_id)

    def test_complete_unknown(self, lifecycle, db):
        with pytest.raises(JobNotFound):
            lifecycle.complete(db, "missing")


class TestExpire:
    def test_expire_skips_held_job(self, lifecycle, db, make_job):
        job_id, _, _ = make_job()
        with lifecycle.index.hold(job_id):
            assert lifecycle.expire(db, job_id) is False
        assert JobRepository(db).get_status(job_id) == "pending"
        assert lifecycle.expire(db, job_id) is True
        assert JobRepository(db).get_status(job_id) == "deleted"

    def test_expire_released_job(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        lifecycle.release(db, job_id, token)
        assert lifecycle.expire(db, job_id) is True
        job = JobRepository(db).get_job(job_id)
        assert job.status == "deleted"
        assert job.deleted_at is not None

    def test_expire_leaves_completed_alone(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        lifecycle.release(db, job_id, token)
        lifecycle.complete(db, job_id)
        lifecycle.expire(db, job_id)
        assert JobRepository(db).get_status(job_id) == "completed"

    def test_reap_expired_rows(self, lifecycle, db, make_job, clock, uploads_dir):
        stale_id, _, _ = make_job(minutes=1)
        fresh_id, _, _ = make_job(minutes=30)
        lifecycle.index.clear()
        clock.advance(120)

        assert lifecycle.reap_expired_rows(db) == 1
        assert JobRepository(db).get_status(stale_id) == "deleted"
        assert JobRepository(db).get_status(fresh_id) == "pending"
        assert len(list(uploads_dir.iterdir())) == 1

    def test_pending_expirations(self, lifecycle, make_job, clock):
        job_id, token, _ = make_job(minutes=1)
        make_job(minutes=30)
        assert lifecycle.pending_expirations() == []
        clock.advance(90)
        expired = lifecycle.pending_expirations()
        assert [e["id"] for e in expired] == [job_id]
        assert expired[0]["token_prefix"] == token[:8] + "..."


class TestDefaultManager:
    def test_defaults(self):
        manager = LifecycleManager()
        assert manager.blobs.root == settings.uploads_dir
        assert len(manager.index) == 0

    def test_submit_uses_options(self, lifecycle, db):
        job, _ = lifecycle.submit(
            db,
            user_id="bob",
            document_name=None,
            upload=Upload(filename="scan.png", mime_type="image/png", content=b"\x89PNG...."),
            public_base="https://print.example",
            options=PrintOptions(color=True, stapling=True, priority="high", notes="front desk"),
        )
        assert job.document_name == "scan.png"
        assert job.color is True
        assert job.stapling is True
        assert job.priority == "high"
        assert job.cost == pytest.approx(0.2)


class TestProperties:
    def test_no_plaintext_without_token(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        guesses = [None, "", token[:-1], token + "x", token.upper(), "a" * 43]
        for guess in guesses:
            if guess == token:
                continue
            with pytest.raises((InvalidToken, JobNotFound)):
                lifecycle.fetch_document(db, job_id, guess)
            with pytest.raises((InvalidToken, JobNotFound)):
                lifecycle.fetch_document(db, "other-" + job_id, guess)

    def test_expired_stays_expired(self, lifecycle, db, make_job, clock):
        job_id, token, _ = make_job(minutes=1)
        clock.advance(60)
        with pytest.raises(LinkExpired):
            lifecycle.validate(db, job_id, token)
        lifecycle.index.clear()
        for _ in range(3):
            with pytest.raises(LinkExpired):
                lifecycle.validate(db, job_id, token)
            with pytest.raises(LinkExpired):
                lifecycle.release(db, job_id, token)
            clock.advance(3600)

    def test_blob_lifetime_bound(self, lifecycle, session_factory, db, make_job, clock, uploads_dir):
        period = 60
        sweeper = Sweeper(lifecycle, session_factory, period_seconds=period)
        for minutes in (1, 2, 3, 5):
            make_job(minutes=minutes)
        released_id, released_token, _ = make_job(minutes=4)
        lifecycle.release(db, released_id, released_token)

        repo = JobRepository(db)
        for _ in range(8):
            clock.advance(period)
            sweeper.sweep_once()
            db.expire_all()
            live = {
                job.id: job
                for job in repo.list_jobs()
                if job.status in ("pending", "released")
            }
            for blob in uploads_dir.iterdir():
                owners = [
                    job for job in live.values()
                    if repo.get_document(job.id) is not None
                    and repo.get_document(job.id).stored_path == blob.name
                ]
                assert len(owners) == 1
                assert from_iso(owners[0].expires_at) > clock.now - period
        assert list(uploads_dir.iterdir()) == []

    def test_view_rows_match_counter(self, lifecycle, db, make_job):
        job_id, token, _ = make_job()
        for _ in range(3):
            lifecycle.record_view(db, job_id, token)
        lifecycle.release(db, job_id, token)
        with pytest.raises(AlreadyReleased):
            lifecycle.record_view(db, job_id, token)
        repo = JobRepository(db)
        assert repo.count_views(job_id) == repo.get_job(job_id).view_count == 3
