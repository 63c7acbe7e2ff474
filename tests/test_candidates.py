import gzip
import math

import pysam
import pytest

from paircall.candidates import (
    INVALID_FILTER,
    CallWriter,
    CandidateReader,
    ObservationWriter,
    candidate_from_record,
    prob_field,
    read_calls,
    record_kind,
    record_probs,
)
from paircall.errors import InputError
from paircall.events import tumor_normal_events
from paircall.models import DEL, INS, SNV, Call, Candidate, Observation

HEADER = """##fileformat=VCFv4.2
##contig=<ID=chr1,length=10000>
##INFO=<ID=SVLEN,Number=.,Type=Integer,Description="Length of the structural variant">
##INFO=<ID=END,Number=1,Type=Integer,Description="End position of the variant">
#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO
"""

ROWS = [
    ("100", "snv", "A", "C,T", "."),
    ("200", "ins", "A", "ACGT", "."),
    ("300", "del", "ACGT", "A", "."),
    ("400", "sdel", "A", "<DEL>", "END=450"),
    ("500", "sins", "A", "<INS>", "SVLEN=20"),
    ("600", "mnv", "AC", "GT", "."),
    ("700", "bad", "A", "Z", "."),
    ("800", "dup", "A", "<DUP>", "SVLEN=100"),
    ("900", "same", "A", "A", "."),
]


def _write_vcf(path, rows=ROWS):
    lines = [f"chr1\t{pos}\t{rid}\t{ref}\t{alt}\t.\t.\t{info}" for pos, rid, ref, alt, info in rows]
    path.write_text(HEADER + "\n".join(lines) + "\n", encoding="utf-8")
    return str(path)


def test_reader_classifies_and_splits_alleles(tmp_path):
    path = _write_vcf(tmp_path / "cands.vcf")
    with CandidateReader(path) as reader:
        cands = list(reader)
        stats = reader.stats
        assert reader.contigs == [("chr1", 10000)]

    assert [(c.record_id, c.kind, c.length) for c in cands] == [
        ("snv", SNV, 1),
        ("snv", SNV, 1),
        ("ins", INS, 3),
        ("del", DEL, 3),
        ("sdel", DEL, 50),
        ("sins", INS, 20),
    ]
    assert [c.alt for c in cands[:2]] == ["C", "T"]
    assert cands[3].pos0 == 299
    assert cands[3].span_end0 == 303
    assert stats == {
        "records_total": 9,
        "alleles_total": 10,
        "candidates": 6,
        "skipped_unsupported": 2,
        "skipped_malformed": 2,
    }


def test_symbolic_deletion_end_convention(tmp_path):
    path = _write_vcf(tmp_path / "cands.vcf", [("400", "sdel", "A", "<DEL>", "END=450")])
    with pysam.VariantFile(path) as vcf:
        rec = next(iter(vcf))
    assert candidate_from_record(rec, "<DEL>", 0).length == 50
    assert candidate_from_record(rec, "<DEL>", 0, exclusive_end=True).length == 49


def test_symbolic_insertion_requires_svlen(tmp_path):
    path = _write_vcf(tmp_path / "cands.vcf", [("500", "sins", "A", "<INS>", ".")])
    with pysam.VariantFile(path) as vcf:
        rec = next(iter(vcf))
    with pytest.raises(InputError):
        candidate_from_record(rec, "<INS>", 0)


def test_missing_candidate_file(tmp_path):
    with pytest.raises(InputError):
        CandidateReader(tmp_path / "missing.vcf")


def _call(cand, **log_probs):
    return Call(candidate=cand, log_probs=log_probs)


def test_call_writer_round_trip(tmp_path):
    events = tumor_normal_events()
    snv = Candidate("chr1", 99, "A", "C", SNV, 1, "s1")
    sdel = Candidate("chr1", 399, "A", "<DEL>", DEL, 50, "d1")
    out = tmp_path / "calls.bcf"
    with CallWriter(out, contigs=[("chr1", 10000)], events=events, source="paircall") as writer:
        writer.write(_call(snv, germline=math.log(0.2), somatic=math.log(0.8), absent=-math.inf))
        writer.write(_call(sdel, germline=math.log(0.5), somatic=math.log(0.25), absent=math.log(0.25)))
        writer.write(Call(candidate=snv, valid=False, error="NaN likelihood"))

    header, records = read_calls(out)
    assert {prob_field(e) for e in events.names} <= set(header.info.keys())
    assert INVALID_FILTER in header.filters.keys()
    assert len(records) == 3

    probs = record_probs(records[0], events.names)
    assert probs["germline"] == pytest.approx(0.2, rel=1e-3)
    assert probs["somatic"] == pytest.approx(0.8, rel=1e-3)
    assert probs["absent"] == pytest.approx(0.0, abs=1e-90)
    assert list(records[0].filter.keys()) == ["PASS"]

    rec = records[1]
    assert rec.stop == 450
    assert rec.info["SVLEN"] == -50
    assert record_kind(rec) == (DEL, 50)
    assert candidate_from_record(rec, rec.alts[0], 0).length == 50

    assert record_probs(records[2], events.names) is None
    assert list(records[2].filter.keys()) == [INVALID_FILTER]

    with pytest.raises(InputError):
        record_probs(records[0], ["loh"])


def test_exclusive_end_is_written_for_symbolic_alleles(tmp_path):
    events = tumor_normal_events()
    sdel = Candidate("chr1", 399, "A", "<DEL>", DEL, 50, "d1")
    out = tmp_path / "calls.vcf"
    with CallWriter(out, contigs=[("chr1", 10000)], events=events, exclusive_end=True) as writer:
        writer.write(_call(sdel, germline=0.0, somatic=-math.inf, absent=-math.inf))
    _, records = read_calls(out)
    assert records[0].stop == 451
    assert candidate_from_record(records[0], "<DEL>", 0, exclusive_end=True).length == 50


def test_observation_writer(tmp_path):
    cand = Candidate("chr1", 99, "A", "C", SNV, 1, "s1")
    call = Call(
        candidate=cand,
        observations={
            "tumor": [Observation(prob_mapping=0.0, prob_alt=-0.01, prob_ref=-math.inf)],
            "normal": [],
        },
    )
    path = tmp_path / "obs.tsv.gz"
    writer = ObservationWriter(path)
    writer.write(call)
    writer.close()

    with gzip.open(path, "rt", encoding="utf-8") as f:
        lines = f.read().splitlines()
    assert lines[0].split("\t") == list(ObservationWriter.columns)
    assert lines[1].split("\t") == ["s1", "chr1", "100", "C", "tumor", "alignment", "0.000000", "-0.010000", "-inf"]
    assert len(lines) == 2
