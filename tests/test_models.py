import math

import pytest

from paircall.errors import ConfigError
from paircall.models import DEL, INS, SNV, Call, Candidate, CallState, InsertSize, VariantType, checked_prob


@pytest.mark.parametrize("p", [0.0, 0.25, 1.0, 1, "0.5"])
def test_checked_prob_accepts_probabilities(p):
    assert checked_prob(p) == float(p)


@pytest.mark.parametrize("p", [-1e-9, 1.0000001, float("nan"), float("inf"), "x", None])
def test_checked_prob_rejects_everything_else(p):
    with pytest.raises(ConfigError):
        checked_prob(p, "purity")


def test_config_error_is_value_error_with_suggestion():
    err = ConfigError("bad value", suggestion="try again")
    assert isinstance(err, ValueError)
    assert str(err) == "bad value (try again)"


def test_variant_type_length_range_is_half_open():
    vt = VariantType(DEL, min_len=2, max_len=5)
    assert not vt.matches(DEL, 1)
    assert vt.matches(DEL, 2)
    assert vt.matches(DEL, 4)
    assert not vt.matches(DEL, 5)
    assert not vt.matches(INS, 3)
    assert VariantType(SNV).matches(SNV, 1)


def test_variant_type_rejects_unknown_kind_and_empty_range():
    with pytest.raises(ConfigError):
        VariantType("MNV")
    with pytest.raises(ConfigError):
        VariantType(DEL, min_len=5, max_len=5)


def test_candidate_end_conventions():
    deletion = Candidate("chr1", 99, "ACGT", "A", DEL, 3, "d")
    assert deletion.span_end0 == 103
    assert deletion.end() == 103
    assert deletion.end(exclusive_end=True) == 104
    snv = Candidate("chr1", 99, "A", "G", SNV, 1, "s")
    assert snv.end() == 100
    assert str(snv) == "chr1:100:A>G"


def test_insert_size_requires_positive_sd():
    with pytest.raises(ConfigError):
        InsertSize(mean=300.0, sd=0.0)


def test_call_probs_and_state():
    call = Call(Candidate("chr1", 0, "A", "G", SNV, 1, "x"), {"a": math.log(0.25), "b": math.log(0.75)})
    assert call.state is CallState.PENDING
    assert call.probs() == pytest.approx({"a": 0.25, "b": 0.75})
    assert call.prob("b") == pytest.approx(0.75)
