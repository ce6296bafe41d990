"""
Tests for registrar.py - The enrollment service end to end.

Covers:
- Enrollment success, read model rows and published events
- Idempotent replay, scoping and failure non-caching
- Concurrent enrollments against the credit ceiling and seat capacity
- Static validation and load-stage rejections
- Withdrawal, grading and prerequisites
- Enrollment listing with filters, sorting and pagination
- GPA queries
- Optimistic concurrency retries and in-doubt idempotency results
- Caller cancellation before and after the commit starts
"""
import asyncio
from dataclasses import replace
from decimal import Decimal

import pytest

from core.errors import ErrorKind, ValidationError
from db.idempotency import InMemoryIdempotencyStore
from db.interfaces import IdempotencyStoreError
from db.memory import InMemoryAggregateRepository, InMemoryDatabase, InMemoryUnitOfWork
from domain.entities import Course, StudentEnrolled, StudentStatus
from registrar import UNEXPECTED_MESSAGE, create_registrar
from tests.helpers import TERM, add_course, add_student


# =============================================================================
# TEST DOUBLES
# =============================================================================


class InterferingUnitOfWork(InMemoryUnitOfWork):
    """Lets another writer bump the student just before each commit."""

    def __init__(self, database: "InterferingDatabase") -> None:
        super().__init__(database)
        self._interfering = database

    async def commit(self):
        if self._interfering.remaining > 0:
            self._interfering.remaining -= 1
            rival = await self._interfering.students.load(self._interfering.target)
            await self._interfering.students.save(rival, expected_version=rival.version)
        return await super().commit()


class InterferingDatabase(InMemoryDatabase):

    def __init__(self, target: str) -> None:
        super().__init__()
        self.target = target
        self.remaining = 0

    def unit_of_work(self) -> InterferingUnitOfWork:
        return InterferingUnitOfWork(self)


class UnwritableIdempotencyStore(InMemoryIdempotencyStore):
    """Accepts reservations but cannot store results."""

    async def complete(self, reservation, payload):
        raise IdempotencyStoreError("result store unavailable")


class GatedCourseRepository(InMemoryAggregateRepository):
    """Course loads wait on a gate while armed."""

    def __init__(self, lock: asyncio.Lock) -> None:
        super().__init__(Course, lock)
        self.armed = False
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def load(self, id):
        if self.armed:
            self.entered.set()
            await self.gate.wait()
        return await super().load(id)


class GatedDatabase(InMemoryDatabase):

    def __init__(self) -> None:
        super().__init__()
        self.courses = GatedCourseRepository(self.lock)


# =============================================================================
# Enrollment Tests
# =============================================================================


class TestEnroll:
    """Tests for the enroll command."""

    @pytest.mark.asyncio
    async def test_success(self, registrar, student, cs101, clock):
        result = await registrar.enroll(student, "CS101", cs101, TERM)

        assert result.is_success
        enrollment_id = result.value

        row = await registrar.read_store.get(enrollment_id)
        assert row.student_id == "S1"
        assert row.course_id == "CS101"
        assert row.status == "active"
        assert row.enrolled_at == clock.now()

        events = registrar.transport.of_type("StudentEnrolled")
        assert [e.enrollment_id for e in events] == [enrollment_id]

    @pytest.mark.asyncio
    async def test_duplicate_enrollment(self, registrar, student, cs101):
        await registrar.enroll(student, "CS101", cs101, TERM)

        result = await registrar.enroll(student, "CS101", cs101, TERM)

        assert result.kind is ErrorKind.CONFLICT
        assert result.error.message == "already enrolled"

    @pytest.mark.asyncio
    async def test_unknown_student(self, registrar, cs101):
        result = await registrar.enroll("S404", "CS101", cs101, TERM)

        assert result.kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_offering(self, registrar, student, cs101):
        result = await registrar.enroll(student, "CS101", "CS101-NOPE", TERM)

        assert result.kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_offering_in_other_term(self, registrar, student, cs101):
        result = await registrar.enroll(student, "CS101", cs101, "SPRING2025")

        assert result.kind is ErrorKind.INVALID_STATE
        assert result.error.message == "offering not scheduled for term"

    @pytest.mark.asyncio
    async def test_term_case_is_one_term(self, registrar, student):
        """fall2024 and FALL2024 share one credit load and one read-model term."""
        big1 = await add_course(registrar, "BIG1", credit_hours=12)
        big2 = await add_course(registrar, "BIG2", credit_hours=12, term="fall2024")

        assert (await registrar.enroll(student, "BIG1", big1, TERM)).is_success
        result = await registrar.enroll(student, "BIG2", big2, "fall2024")

        assert result.kind is ErrorKind.RULE_VIOLATION
        assert result.error.message == "credit limit exceeded"

        page = await registrar.get_enrollments(student_id=student, term="Fall2024")
        assert [row.course_id for row in page.items] == ["BIG1"]
        assert page.items[0].term == TERM

    @pytest.mark.asyncio
    async def test_inactive_course(self, registrar, student, cs101):
        assert (await registrar.deactivate_course("CS101")).is_success

        result = await registrar.enroll(student, "CS101", cs101, TERM)

        assert result.kind is ErrorKind.INVALID_STATE
        assert result.error.message == "course not active"

    @pytest.mark.asyncio
    async def test_suspended_student(self, registrar, student, cs101):
        await registrar.change_student_status(student, StudentStatus.SUSPENDED, "unpaid fees")

        result = await registrar.enroll(student, "CS101", cs101, TERM)

        assert result.kind is ErrorKind.INVALID_STATE
        assert result.error.message == "student not active"

    @pytest.mark.asyncio
    async def test_validation_touches_nothing(self, registrar, student, cs101):
        published = len(registrar.transport.published)

        result = await registrar.enroll(student, "", cs101, "AUTUMN2024", idempotency_key="k1")

        assert result.kind is ErrorKind.VALIDATION
        assert {field for field, _ in result.error.field_errors} == {"course_id", "term"}
        assert len(registrar.transport.published) == published
        assert len(registrar.idempotency) == 0
        assert await registrar.read_store.count() == 0


class TestCapacityAndCredits:
    """Tests for seat capacity and the credit ceiling under concurrency."""

    @pytest.mark.asyncio
    async def test_capacity_exceeded(self, registrar):
        offering = await add_course(registrar, "CS101", capacity=2)
        for student_id in ["S1", "S2", "S3"]:
            await add_student(registrar, student_id)

        results = await asyncio.gather(*[
            registrar.enroll(student_id, "CS101", offering, TERM)
            for student_id in ["S1", "S2", "S3"]
        ])

        assert sum(r.is_success for r in results) == 2
        failures = [r for r in results if not r.is_success]
        assert failures[0].kind is ErrorKind.RULE_VIOLATION
        assert failures[0].error.message == "capacity exceeded"

    @pytest.mark.asyncio
    async def test_concurrent_enrollments_respect_ceiling(self, registrar, student):
        offerings = [await add_course(registrar, f"C{i}", credit_hours=3) for i in range(10)]

        results = await asyncio.gather(*[
            registrar.enroll(student, f"C{i}", offering, TERM)
            for i, offering in enumerate(offerings)
        ])

        assert sum(r.is_success for r in results) == 7
        rejected = [r for r in results if not r.is_success]
        assert {r.error.message for r in rejected} == {"credit limit exceeded"}

        page = await registrar.get_enrollments(student_id=student, term=TERM)
        assert page.total == 7
        assert sum(row.credit_hours for row in page.items) == 21

    @pytest.mark.asyncio
    async def test_ceiling_follows_policy(self, config, clock):
        tight = replace(config.snapshot(), credit_hour_ceiling=6)

        async with create_registrar(config, clock=clock, policy=lambda: tight) as registrar:
            await add_student(registrar, "S1")
            first = await add_course(registrar, "C1", credit_hours=3)
            second = await add_course(registrar, "C2", credit_hours=4)

            assert (await registrar.enroll("S1", "C1", first, TERM)).is_success
            result = await registrar.enroll("S1", "C2", second, TERM)

        assert result.error.message == "credit limit exceeded"


class TestWithdrawAndGrade:
    """Tests for withdraw and assign_grade."""

    @pytest.mark.asyncio
    async def test_withdraw_frees_seat(self, registrar):
        offering = await add_course(registrar, "CS101", capacity=1)
        await add_student(registrar, "S1")
        await add_student(registrar, "S2")
        enrollment_id = (await registrar.enroll("S1", "CS101", offering, TERM)).value

        full = await registrar.enroll("S2", "CS101", offering, TERM)
        assert full.error.message == "capacity exceeded"

        assert (await registrar.withdraw("S1", enrollment_id)).is_success
        assert (await registrar.enroll("S2", "CS101", offering, TERM)).is_success
        assert (await registrar.read_store.get(enrollment_id)).status == "withdrawn"

    @pytest.mark.asyncio
    async def test_withdraw_twice(self, registrar, student, cs101):
        enrollment_id = (await registrar.enroll(student, "CS101", cs101, TERM)).value
        await registrar.withdraw(student, enrollment_id)

        result = await registrar.withdraw(student, enrollment_id)

        assert result.kind is ErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_withdraw_unknown_enrollment(self, registrar, student):
        result = await registrar.withdraw(student, "E404")

        assert result.kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_grading_withdrawn_enrollment(self, registrar, student, cs101):
        enrollment_id = (await registrar.enroll(student, "CS101", cs101, TERM)).value
        await registrar.withdraw(student, enrollment_id)

        result = await registrar.assign_grade(student, enrollment_id, "A", "T1")

        assert result.kind is ErrorKind.INVALID_STATE
        assert result.error.message == "enrollment withdrawn"

    @pytest.mark.asyncio
    async def test_unknown_grade_rejected(self, registrar, student, cs101):
        enrollment_id = (await registrar.enroll(student, "CS101", cs101, TERM)).value

        result = await registrar.assign_grade(student, enrollment_id, "E", "T1")

        assert result.kind is ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_prerequisite_flow(self, registrar, student):
        intro = await add_course(registrar, "CS101", term="SPRING2024")
        advanced = await add_course(registrar, "CS201", prerequisites=["CS101"])

        blocked = await registrar.enroll(student, "CS201", advanced, TERM)
        assert blocked.kind is ErrorKind.RULE_VIOLATION
        assert blocked.error.message == "prerequisite not met"

        enrollment_id = (await registrar.enroll(student, "CS101", intro, "SPRING2024")).value
        assert (await registrar.assign_grade(student, enrollment_id, "B", "T1")).is_success

        assert (await registrar.enroll(student, "CS201", advanced, TERM)).is_success


class TestStudentLifecycle:

    @pytest.mark.asyncio
    async def test_duplicate_registration(self, registrar, student):
        result = await registrar.register_student(student)

        assert result.kind is ErrorKind.CONFLICT

    @pytest.mark.asyncio
    async def test_graduated_is_terminal(self, registrar, student):
        assert (await registrar.change_student_status(student, "graduated")).is_success

        result = await registrar.change_student_status(student, "active")

        assert result.kind is ErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_unknown_status(self, registrar, student):
        result = await registrar.change_student_status(student, "expelled")

        assert result.kind is ErrorKind.VALIDATION


# =============================================================================
# Idempotency Tests
# =============================================================================


class TestIdempotency:
    """Commands carrying an idempotency key execute at most once."""

    @pytest.mark.asyncio
    async def test_replay_returns_original_result(self, registrar, student, cs101):
        first = await registrar.enroll(student, "CS101", cs101, TERM, idempotency_key="req-1")
        second = await registrar.enroll(student, "CS101", cs101, TERM, idempotency_key="req-1")

        assert first.is_success
        assert second == first
        assert len(registrar.transport.of_type("StudentEnrolled")) == 1
        assert await registrar.read_store.count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_execute_once(self, registrar, student, cs101):
        results = await asyncio.gather(*[
            registrar.enroll(student, "CS101", cs101, TERM, idempotency_key="req-1")
            for _ in range(5)
        ])

        assert all(r.is_success for r in results)
        assert len({r.value for r in results}) == 1
        assert len(registrar.transport.of_type("StudentEnrolled")) == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, registrar, cs101):
        missing = await registrar.enroll("S1", "CS101", cs101, TERM, idempotency_key="req-1")
        assert missing.kind is ErrorKind.NOT_FOUND

        await add_student(registrar, "S1")
        retried = await registrar.enroll("S1", "CS101", cs101, TERM, idempotency_key="req-1")

        assert retried.is_success

    @pytest.mark.asyncio
    async def test_keys_scoped_per_command_type(self, registrar):
        registered = await registrar.register_student("S1", idempotency_key="shared")
        created = await registrar.create_course("CS101", "CS101", "Intro", 3, idempotency_key="shared")

        assert registered.value == "S1"
        assert created.value == "CS101"

    @pytest.mark.asyncio
    async def test_replay_of_none_result(self, registrar, student, cs101):
        enrollment_id = (await registrar.enroll(student, "CS101", cs101, TERM)).value

        first = await registrar.withdraw(student, enrollment_id, idempotency_key="w-1")
        second = await registrar.withdraw(student, enrollment_id, idempotency_key="w-1")

        assert first.is_success and second.is_success
        assert second.value is None
        assert len(registrar.transport.of_type("EnrollmentWithdrawn")) == 1

    @pytest.mark.asyncio
    async def test_result_expires(self, registrar, student, cs101, clock, config):
        await registrar.enroll(student, "CS101", cs101, TERM, idempotency_key="req-1")

        clock.advance(seconds=config.idempotency.ttl_seconds + 1)
        again = await registrar.enroll(student, "CS101", cs101, TERM, idempotency_key="req-1")

        assert again.kind is ErrorKind.CONFLICT
        assert again.error.message == "already enrolled"

    @pytest.mark.asyncio
    async def test_unstored_result_is_in_doubt(self, config, clock):
        store = UnwritableIdempotencyStore(clock)

        async with create_registrar(config, clock=clock, idempotency=store) as registrar:
            await add_student(registrar, "S1")
            offering = await add_course(registrar, "CS101")

            first = await registrar.enroll("S1", "CS101", offering, TERM, idempotency_key="req-1")
            retry = await registrar.enroll("S1", "CS101", offering, TERM, idempotency_key="req-1")

            assert first.kind is ErrorKind.UNEXPECTED
            assert first.error.message == UNEXPECTED_MESSAGE
            assert await registrar.read_store.count() == 1
            assert retry.kind is ErrorKind.CONFLICT
            assert retry.error.message == "outcome of original request is unknown"


# =============================================================================
# Optimistic Concurrency Tests
# =============================================================================


class TestConcurrencyRetries:
    """Version conflicts are retried a bounded number of times."""

    @pytest.mark.asyncio
    async def test_retries_until_commit(self, config, clock):
        database = InterferingDatabase(target="S1")

        async with create_registrar(config, clock=clock, database=database) as registrar:
            await add_student(registrar, "S1")
            offering = await add_course(registrar, "CS101")

            database.remaining = 2
            result = await registrar.enroll("S1", "CS101", offering, TERM)

            assert result.is_success
            assert database.remaining == 0
            assert await registrar.read_store.count() == 1

    @pytest.mark.asyncio
    async def test_gives_up_with_conflict(self, config, clock):
        database = InterferingDatabase(target="S1")

        async with create_registrar(config, clock=clock, database=database) as registrar:
            await add_student(registrar, "S1")
            offering = await add_course(registrar, "CS101")

            database.remaining = 100
            result = await registrar.enroll("S1", "CS101", offering, TERM, idempotency_key="req-1")

            assert result.kind is ErrorKind.CONFLICT
            assert result.error.message == "concurrent modification, retries exhausted"
            assert database.remaining == 100 - (config.pipeline.max_concurrency_retries + 1)
            assert await registrar.read_store.count() == 0
            assert (await database.courses.load("CS101")).offering(offering).enrolled_count == 0

            database.remaining = 0
            retried = await registrar.enroll("S1", "CS101", offering, TERM, idempotency_key="req-1")
            assert retried.is_success


# =============================================================================
# Cancellation Tests
# =============================================================================


class TestCancellation:
    """A cancelled caller either leaves no trace or lets the commit finish."""

    @pytest.mark.asyncio
    async def test_cancel_while_loading_releases_key(self, config, clock):
        database = GatedDatabase()

        async with create_registrar(config, clock=clock, database=database) as registrar:
            await add_student(registrar, "S1")
            offering = await add_course(registrar, "CS101")

            database.courses.armed = True
            task = asyncio.create_task(
                registrar.enroll("S1", "CS101", offering, TERM, idempotency_key="req-1")
            )
            await database.courses.entered.wait()
            task.cancel()

            with pytest.raises(asyncio.CancelledError):
                await task

            assert await registrar.read_store.count() == 0
            assert registrar.transport.of_type("StudentEnrolled") == []

            database.courses.armed = False
            rerun = await registrar.enroll("S1", "CS101", offering, TERM, idempotency_key="req-1")

            assert rerun.is_success
            assert await registrar.read_store.count() == 1

    @pytest.mark.asyncio
    async def test_cancel_during_dispatch_keeps_commit(self, registrar, student, cs101):
        entered = asyncio.Event()
        gate = asyncio.Event()

        async def slow_reaction(event):
            entered.set()
            await gate.wait()

        registrar.dispatcher.register(StudentEnrolled, slow_reaction)
        task = asyncio.create_task(
            registrar.enroll(student, "CS101", cs101, TERM, idempotency_key="req-2")
        )
        await entered.wait()
        task.cancel()
        await asyncio.sleep(0)

        assert not task.done()

        gate.set()
        with pytest.raises(asyncio.CancelledError):
            await task

        page = await registrar.get_enrollments(student_id=student)
        assert page.total == 1

        replay = await registrar.enroll(student, "CS101", cs101, TERM, idempotency_key="req-2")
        assert replay.is_success
        assert replay.value == page.items[0].id
        assert await registrar.read_store.count() == 1


# =============================================================================
# Query Tests
# =============================================================================


class TestGetEnrollments:
    """Tests for the enrollment listing query."""

    async def _populate(self, registrar, count: int):
        offering = await add_course(registrar, "CS101", capacity=count)
        ids = []
        for i in range(count):
            student_id = f"S{i:02d}"
            await add_student(registrar, student_id)
            ids.append((await registrar.enroll(student_id, "CS101", offering, TERM)).value)
        return ids

    @pytest.mark.asyncio
    async def test_pages_cover_all_rows_once(self, registrar):
        ids = await self._populate(registrar, 25)

        pages = [
            await registrar.get_enrollments(course_id="CS101", page=n, page_size=10)
            for n in (1, 2, 3)
        ]

        assert [len(p.items) for p in pages] == [10, 10, 5]
        assert pages[0].has_next and not pages[2].has_next
        assert all(p.total == 25 for p in pages)
        listed = [row.id for p in pages for row in p.items]
        # Every row shares enrolled_at, so the id tie-break decides the order
        assert listed == sorted(ids)

    @pytest.mark.asyncio
    async def test_page_size_clamped(self, registrar):
        await self._populate(registrar, 3)

        page = await registrar.get_enrollments(page=0, page_size=500)

        assert page.page == 1
        assert page.page_size == 100
        assert page.total == 3

    @pytest.mark.asyncio
    async def test_default_page_size(self, registrar):
        page = await registrar.get_enrollments()

        assert page.page_size == 20
        assert page.items == ()

    @pytest.mark.asyncio
    async def test_filters(self, registrar, student, cs101):
        spring = await add_course(registrar, "MA101", term="SPRING2025")
        first = (await registrar.enroll(student, "CS101", cs101, TERM)).value
        await registrar.enroll(student, "MA101", spring, "SPRING2025")
        await registrar.withdraw(student, first)

        fall = await registrar.get_enrollments(student_id=student, term=TERM)
        active = await registrar.get_enrollments(student_id=student, status="active")

        assert [row.id for row in fall.items] == [first]
        assert [row.course_id for row in active.items] == ["MA101"]

    @pytest.mark.asyncio
    async def test_sort_by_term(self, registrar, student):
        later = await add_course(registrar, "MA101", term="SPRING2025")
        earlier = await add_course(registrar, "CS101", term="SPRING2024")
        await registrar.enroll(student, "MA101", later, "SPRING2025")
        await registrar.enroll(student, "CS101", earlier, "SPRING2024")

        page = await registrar.get_enrollments(student_id=student, sort_by="term", descending=False)

        assert [row.term for row in page.items] == ["SPRING2024", "SPRING2025"]

    @pytest.mark.asyncio
    async def test_invalid_query_raises(self, registrar):
        with pytest.raises(ValidationError) as exc_info:
            await registrar.get_enrollments(sort_by="gpa", status="pending")

        assert {e.field for e in exc_info.value.field_errors} == {"sort_by", "status"}


class TestGpaQuery:
    """Tests for the GPA query."""

    @pytest.mark.asyncio
    async def test_cumulative(self, registrar, student):
        first = await add_course(registrar, "CS101")
        second = await add_course(registrar, "CS102")
        e1 = (await registrar.enroll(student, "CS101", first, TERM)).value
        e2 = (await registrar.enroll(student, "CS102", second, TERM)).value
        await registrar.assign_grade(student, e1, "A", "T1")
        await registrar.assign_grade(student, e2, "B", "T1")

        summary = await registrar.get_cumulative_gpa(student)

        assert summary.gpa == Decimal("3.500")
        assert summary.attempted_credit_hours == 6
        assert summary.graded_count == 2

    @pytest.mark.asyncio
    async def test_term_gpa(self, registrar, student):
        spring = await add_course(registrar, "CS101", term="SPRING2024")
        fall = await add_course(registrar, "CS102")
        e1 = (await registrar.enroll(student, "CS101", spring, "SPRING2024")).value
        e2 = (await registrar.enroll(student, "CS102", fall, TERM)).value
        await registrar.assign_grade(student, e1, "A", "T1")
        await registrar.assign_grade(student, e2, "C", "T1")

        summary = await registrar.get_cumulative_gpa(student, term=TERM)

        assert summary.gpa == Decimal("2.000")
        assert summary.term == TERM

    @pytest.mark.asyncio
    async def test_ungraded_student(self, registrar, student, cs101):
        await registrar.enroll(student, "CS101", cs101, TERM)

        summary = await registrar.get_cumulative_gpa(student)

        assert summary.gpa is None
        assert summary.graded_count == 0

    @pytest.mark.asyncio
    async def test_invalid_student_id(self, registrar):
        with pytest.raises(ValidationError):
            await registrar.get_cumulative_gpa("")
