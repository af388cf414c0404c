from course_mapping.normalizer import (
    dedup_key,
    deduplicate,
    normalize_record,
    normalize_records,
    split_compound,
)
from course_mapping.schemas import CourseRecord


def test_aliases_probe_in_order_and_skip_placeholders():
    rec = normalize_record(
        {
            "name": "-",
            "CourseName": "Biology 1",
            "code": "null",
            "CourseCode": "2000310",
            "GradeLevel": "9-12",
            "Credits": 1,
        }
    )
    assert rec.name == "Biology 1"
    assert rec.code == "2000310"
    assert rec.grade_level == "9-12"
    assert rec.credit == "1"


def test_missing_fields_get_explicit_defaults():
    rec = normalize_record({"title": "Study Hall"}, source_file="catalog.pdf")
    assert rec.category == "Uncategorized"
    assert rec.code == ""
    assert rec.prerequisite == "-"
    assert rec.source_file == "catalog.pdf"


def test_boolean_values_are_not_field_values():
    rec = normalize_record({"CourseName": "Art", "Category": True})
    assert rec.category == "Uncategorized"


def test_compound_range_expands():
    names = [r.name for r in split_compound(CourseRecord(name="English 1-4", category="English"))]
    assert names == ["English 1", "English 2", "English 3", "English 4"]


def test_compound_range_with_en_dash():
    assert len(split_compound(CourseRecord(name="Spanish 1 – 3"))) == 3


def test_wide_compound_range_is_left_alone():
    rec = CourseRecord(name="Band 1-20")
    assert split_compound(rec) == [rec]


def test_reversed_range_is_left_alone():
    rec = CourseRecord(name="Chorus 4-2")
    assert split_compound(rec) == [rec]


def test_algebra_variants_dedupe_to_one():
    raws = [
        {"CourseName": "Algebra I", "Category": "Mathematics"},
        {"CourseName": "Algebra  I", "Category": "  MATHEMATICS "},
    ]
    records = normalize_records(raws)
    assert len(records) == 1
    assert records[0].category == "Mathematics"


def test_dedup_keeps_first_occurrence_in_order():
    a = CourseRecord(name="Chemistry", category="Science", code="A")
    a_dup = CourseRecord(name="chemistry", category="science", code="B")
    b = CourseRecord(name="Physics", category="Science")
    assert deduplicate([a, a_dup, b]) == [a, b]


def test_grade_level_is_part_of_the_key():
    a = CourseRecord(name="Art", grade_level="9")
    b = CourseRecord(name="Art", grade_level="10")
    assert dedup_key(a) != dedup_key(b)
    assert len(deduplicate([a, b])) == 2


def test_normalize_drops_nameless_records():
    assert normalize_records([{"CourseCode": "123"}, {"CourseName": ""}]) == []


def test_normalize_is_idempotent():
    raws = [
        {"CourseName": "Algebra 1-2", "Category": "Math", "CourseCode": "MA-12"},
        {"title": "Biology", "Credits": 1.0, "Description": "Cells and life."},
        {"CourseName": "biology"},
    ]
    once = normalize_records(raws, source_file="guide.txt")
    twice = normalize_records(once)
    assert twice == once
