"""Tests for many-to-many relations through a pivot table."""

from __future__ import annotations

import pytest

from recordkit import Mapped, Model, Pivot, QueryBuilder, belongs_to_many, mapped_column


class Enrollment(Pivot):
    """Pivot row with a convenience accessor."""

    @property
    def passed(self) -> bool:
        return self.grade in ("A", "B", "C")


class Student(Model):
    __tablename__ = "students"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]

    courses = belongs_to_many("Course", pivot_columns=["grade"])
    enrollments = belongs_to_many("Course", pivot_columns=["grade"], pivot_class=Enrollment)
    tracked_courses = belongs_to_many("Course", pivot_timestamps=True)


class Course(Model):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str]

    students = belongs_to_many("Student")


def pivot_rows() -> QueryBuilder:
    return QueryBuilder(table="course_student").order_by("student_id").order_by("course_id")


@pytest.fixture
async def school(db):
    await db.execute("CREATE TABLE students (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT)")
    await db.execute("CREATE TABLE courses (id INTEGER PRIMARY KEY, title TEXT)")
    await db.execute(
        "CREATE TABLE course_student ("
        "student_id INTEGER, course_id INTEGER, active INTEGER, grade TEXT, created_at TEXT, updated_at TEXT)"
    )
    await Student.create(name="Ann")
    await Student.create(name="Ben")
    for course_id, title in ((10, "Algebra"), (11, "Biology"), (12, "Chemistry")):
        await Course.create(id=course_id, title=title)
    db.reset()
    return db


class TestConventions:
    """Test default pivot naming."""

    def test_default_pivot_table_and_keys(self) -> None:
        relation = Student.hydrate({"id": 1, "name": "Ann"}).related("courses")
        assert relation.pivot_table == "course_student"
        assert relation.foreign_pivot_key == "student_id"
        assert relation.related_pivot_key == "course_id"

    def test_inverse_side_shares_the_pivot(self) -> None:
        relation = Course.hydrate({"id": 10, "title": "Algebra"}).related("students")
        assert relation.pivot_table == "course_student"
        assert relation.foreign_pivot_key == "course_id"
        assert relation.related_pivot_key == "student_id"


class TestAttachDetach:
    """Test direct pivot writes."""

    async def test_attach_inserts_one_row(self, school) -> None:
        ann = await Student.find(1)
        await ann.related("courses").attach(10, {"active": True})

        assert school.statements == [
            ("SELECT * FROM \"students\" WHERE \"students\".\"id\" = ? LIMIT 1", [1]),
            ('INSERT INTO "course_student" ("active", "course_id", "student_id") VALUES (?, ?, ?)', [1, 10, 1]),
        ]
        rows = await pivot_rows().get()
        assert [(r["student_id"], r["course_id"], r["active"]) for r in rows] == [(1, 10, 1)]

    async def test_detach_removes_only_that_row(self, school) -> None:
        ann, ben = await Student.query().find_many([1, 2])
        await ann.related("courses").attach([10, 11])
        await ben.related("courses").attach(10)

        assert await ann.related("courses").detach(10) == 1

        rows = await pivot_rows().get()
        assert [(r["student_id"], r["course_id"]) for r in rows] == [(1, 11), (2, 10)]

    async def test_detach_all(self, school) -> None:
        ann = await Student.find(1)
        await ann.related("courses").attach([10, 11, 12])

        assert await ann.related("courses").detach() == 3
        assert await pivot_rows().count() == 0

    async def test_attach_models_and_per_id_attributes(self, school) -> None:
        ann = await Student.find(1)
        algebra, biology = await Course.query().find_many([10, 11])

        await ann.related("courses").attach([algebra])
        await ann.related("courses").attach({biology.id: {"grade": "A"}})

        rows = await pivot_rows().get()
        assert [(r["course_id"], r["grade"]) for r in rows] == [(10, None), (11, "A")]

    async def test_unsaved_owner_cannot_attach(self, school) -> None:
        with pytest.raises(ValueError, match="unsaved"):
            await Student(name="New").related("courses").attach(10)

    async def test_pivot_rows_are_not_saved_directly(self, school) -> None:
        ann = await Student.find(1)
        await ann.related("courses").attach(10)
        course = (await ann.related("courses").get())[0]

        with pytest.raises(TypeError):
            await course.pivot.save()


class TestSyncToggle:
    """Test sync, toggle and pivot updates."""

    async def test_sync(self, school) -> None:
        ann = await Student.find(1)
        await ann.related("courses").attach([10, 11])

        changes = await ann.related("courses").sync([11, 12])

        assert changes == {"attached": [12], "detached": [10], "updated": []}
        assert await pivot_rows().pluck("course_id") == [11, 12]

    async def test_sync_with_attributes_updates_existing(self, school) -> None:
        ann = await Student.find(1)
        await ann.related("courses").attach([11, 12])

        changes = await ann.related("courses").sync({11: {"grade": "B"}})

        assert changes == {"attached": [], "detached": [12], "updated": [11]}
        rows = await pivot_rows().get()
        assert [(r["course_id"], r["grade"]) for r in rows] == [(11, "B")]

    async def test_sync_without_detaching(self, school) -> None:
        ann = await Student.find(1)
        await ann.related("courses").attach(11)

        changes = await ann.related("courses").sync_without_detaching([10])

        assert changes["attached"] == [10]
        assert changes["detached"] == []
        assert await pivot_rows().pluck("course_id") == [10, 11]

    async def test_toggle(self, school) -> None:
        ann = await Student.find(1)
        await ann.related("courses").attach([10, 11])

        changes = await ann.related("courses").toggle([10, 12])

        assert changes == {"attached": [12], "detached": [10]}
        assert await pivot_rows().pluck("course_id") == [11, 12]

    async def test_update_existing_pivot(self, school) -> None:
        ann = await Student.find(1)
        await ann.related("courses").attach([10, 11])

        assert await ann.related("courses").update_existing_pivot(10, {"grade": "C"}) == 1
        assert await pivot_rows().pluck("grade") == ["C", None]

    async def test_timestamps_on_attach(self, school) -> None:
        ann = await Student.find(1)
        await ann.related("tracked_courses").attach(10)

        row = (await pivot_rows().get())[0]
        assert row["created_at"] is not None
        assert row["updated_at"] is not None


class TestReading:
    """Test lazy and eager reads with pivot data."""

    @pytest.fixture
    async def enrolled(self, school):
        ann, ben = await Student.query().find_many([1, 2])
        await ann.related("courses").attach({10: {"grade": "A"}, 11: {"grade": "D"}})
        await ben.related("courses").attach({10: {"grade": "B"}, 12: {"grade": None}})
        school.reset()
        return ann, ben

    async def test_lazy_get_carries_pivot(self, enrolled) -> None:
        ann, _ = enrolled
        courses = await ann.related("courses").order_by("courses.id").get()

        assert [c.title for c in courses] == ["Algebra", "Biology"]
        assert [c.pivot.grade for c in courses] == ["A", "D"]
        assert courses[0].pivot.student_id == ann.id
        assert isinstance(courses[0].pivot, Pivot)

    async def test_with_pivot(self, enrolled) -> None:
        ann, _ = enrolled
        courses = await ann.related("courses").with_pivot("active").get()
        assert all("active" in c.pivot.attributes for c in courses)

    async def test_custom_pivot_class(self, enrolled) -> None:
        ann, _ = enrolled
        courses = await ann.related("enrollments").order_by("courses.id").get()
        assert isinstance(courses[0].pivot, Enrollment)
        assert [c.pivot.passed for c in courses] == [True, False]

    async def test_where_pivot(self, enrolled) -> None:
        ann, ben = enrolled
        assert [c.title for c in await ann.related("courses").where_pivot("grade", "A").get()] == ["Algebra"]
        assert [c.title for c in await ben.related("courses").where_pivot_null("grade").get()] == ["Chemistry"]
        in_filter = ben.related("courses").where_pivot_in("grade", ["A", "B"])
        assert [c.title for c in await in_filter.get()] == ["Algebra"]

    async def test_inverse_side(self, enrolled) -> None:
        algebra = await Course.find(10)
        students = await algebra.related("students").order_by("students.id").get()
        assert [s.name for s in students] == ["Ann", "Ben"]

    async def test_eager_load_batches_queries(self, enrolled, school) -> None:
        students = await Student.with_("courses").order_by("id").get()

        assert len(school.queries) == 3
        ann, ben = students
        assert sorted(c.title for c in ann.courses) == ["Algebra", "Biology"]
        assert sorted(c.title for c in ben.courses) == ["Algebra", "Chemistry"]

    async def test_eager_load_gives_each_owner_its_own_pivot(self, enrolled) -> None:
        ann, ben = await Student.with_("courses").order_by("id").get()

        ann_algebra = next(c for c in ann.courses if c.id == 10)
        ben_algebra = next(c for c in ben.courses if c.id == 10)
        assert ann_algebra is not ben_algebra
        assert (ann_algebra.pivot.student_id, ann_algebra.pivot.grade) == (1, "A")
        assert (ben_algebra.pivot.student_id, ben_algebra.pivot.grade) == (2, "B")

    async def test_eager_load_with_pivot_filter(self, enrolled) -> None:
        students = await Student.with_(courses=lambda q: q.where_pivot("grade", "A")).order_by("id").get()
        assert [c.title for c in students[0].courses] == ["Algebra"]
        assert students[1].courses == []

    async def test_or_where_stays_inside_the_owner(self, enrolled) -> None:
        ann, _ = enrolled
        query = ann.related("courses").or_where("courses.title", "Chemistry").order_by("courses.id")

        sql, bindings = query.to_sql()
        assert 'WHERE "course_student"."student_id" = ? AND ("courses"."title" = ?) ORDER BY' in sql
        assert bindings == [1, "Chemistry"]
        assert [c.title for c in await query.get()] == ["Algebra", "Biology"]

    async def test_pivot_aliases_use_double_underscore(self, enrolled) -> None:
        ann, _ = enrolled
        sql, _ = ann.related("courses").to_sql()
        assert '"course_student"."grade" AS "pivot__grade"' in sql

    async def test_detach_with_or_pivot_filter_keeps_other_owners(self, enrolled) -> None:
        ann, _ = enrolled
        assert await ann.related("courses").or_where_pivot("grade", "B").detach() == 0

        rows = await pivot_rows().get()
        assert [(r["student_id"], r["course_id"]) for r in rows] == [(1, 10), (1, 11), (2, 10), (2, 12)]
