import pytest

from readprep import cigar as cg
from readprep.mdtag import MdTag, compute_md, mismatch_count, reference_bases
from readprep.models import AlignmentRecord, flags_from_int, project_record, validate_record


def make_read(seq: str = "ACGTACGTAA", start: int = 100, **kw) -> AlignmentRecord:
    fields = dict(
        read_name="r1",
        sequence=seq,
        quality_scores=(30,) * len(seq),
        reference_name="chr1",
        start=start,
        cigar=((cg.MATCH, len(seq)),),
        mapping_quality=60,
        read_mapped=True,
    )
    fields.update(kw)
    return AlignmentRecord(**fields)


def test_parse_cigar_roundtrip_and_errors():
    assert cg.parse_cigar("5S10M2I3M1D4M") == (
        (cg.SOFT_CLIP, 5),
        (cg.MATCH, 10),
        (cg.INSERTION, 2),
        (cg.MATCH, 3),
        (cg.DELETION, 1),
        (cg.MATCH, 4),
    )
    assert cg.cigar_to_string(cg.parse_cigar("3H7M")) == "3H7M"
    assert cg.parse_cigar("*") == ()
    with pytest.raises(ValueError):
        cg.parse_cigar("10Q")
    with pytest.raises(ValueError):
        cg.parse_cigar("0M")


def test_cigar_lengths_and_normalize():
    cig = cg.parse_cigar("2S10M3D5M1I4M")
    assert cg.reference_length(cig) == 22
    assert cg.query_length(cig) == 22
    assert cg.normalize([(cg.MATCH, 3), (cg.MATCH, 4), (cg.DELETION, 0), (cg.INSERTION, 1)]) == (
        (cg.MATCH, 7),
        (cg.INSERTION, 1),
    )


def test_end_and_five_prime_position():
    fwd = make_read("A" * 25, start=100, cigar=((cg.SOFT_CLIP, 5), (cg.MATCH, 20)))
    assert fwd.end == 120
    assert fwd.five_prime_position == 95

    rev = make_read("A" * 23, start=100, cigar=((cg.MATCH, 20), (cg.SOFT_CLIP, 3)), read_negative_strand=True)
    assert rev.five_prime_position == 122


def test_flag_roundtrip():
    rec = make_read(read_paired=True, mate_mapped=True, first_of_pair=True, duplicate_read=True)
    assert rec.flag == 0x1 | 0x40 | 0x400
    decoded = flags_from_int(rec.flag)
    assert decoded["read_mapped"] is True
    assert decoded["duplicate_read"] is True
    assert decoded["second_of_pair"] is False

    assert AlignmentRecord(read_name="u").flag == 0x4


def test_record_id_distinguishes_pair_members_and_secondaries():
    assert make_read(first_of_pair=True).record_id == "r1/1"
    assert make_read(second_of_pair=True).record_id == "r1/2"
    assert make_read(secondary_alignment=True).record_id == "r1/0:sec@chr1:100"


def test_validate_record_rejects_inconsistent_reads():
    validate_record(make_read())
    with pytest.raises(ValueError, match="quality length"):
        validate_record(make_read(quality_scores=(30,)))
    with pytest.raises(ValueError, match="cigar"):
        validate_record(make_read(cigar=((cg.MATCH, 3),)))
    with pytest.raises(ValueError, match="unmapped"):
        validate_record(AlignmentRecord(read_name="u", start=5))


def test_project_record_resets_unselected_fields():
    rec = make_read(read_group_id="rg1")
    slim = project_record(rec, frozenset({"read_name", "start"}))
    assert slim.read_name == "r1"
    assert slim.start == 100
    assert slim.sequence == ""
    assert slim.read_group_id is None
    assert slim.read_mapped is False


def test_compute_md_mismatch_and_deletion():
    ref = "ACGTACGTAC"
    lookup = lambda p: ref[p] if 0 <= p < len(ref) else None  # noqa: E731

    assert compute_md("ACGTA", ((cg.MATCH, 5),), 0, lookup) == "5"
    assert compute_md("ACCTA", ((cg.MATCH, 5),), 0, lookup) == "2G2"
    assert compute_md("ACTA", ((cg.MATCH, 2), (cg.DELETION, 1), (cg.MATCH, 2)), 0, lookup) == "2^G2"
    with pytest.raises(ValueError):
        compute_md("ACGTA", ((cg.MATCH, 5),), 8, lookup)


def test_md_parse_and_reference_reconstruction():
    md = MdTag.parse("2G2^T3", 10)
    assert dict(md.mismatches) == {12: "G"}
    assert dict(md.deletions) == {15: "T"}
    assert md.end == 19

    rec = make_read("ACCTA", start=0, mismatching_positions="2G2")
    assert reference_bases(rec) == {0: "A", 1: "C", 2: "G", 3: "T", 4: "A"}
    assert mismatch_count(rec) == 1
    assert mismatch_count(rec, reference=lambda p: "ACGTA"[p]) == 1


def test_md_parse_rejects_malformed_and_mismatched_tags():
    with pytest.raises(ValueError):
        MdTag.parse("2G?", 0)
    with pytest.raises(ValueError):
        MdTag.parse("10", 0, ((cg.MATCH, 5),))
