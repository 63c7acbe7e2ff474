import math

import pytest

from paircall.candidates import CallWriter, read_calls
from paircall.errors import ConfigError
from paircall.events import tumor_normal_events
from paircall.filtration import (
    KassRaftery,
    control_fdr,
    control_fdr_records,
    filter_by_odds,
    filter_records_by_odds,
    posterior_odds_evidence,
)
from paircall.models import DEL, INS, SNV, Call, Candidate, VariantType


def test_control_fdr_accepts_largest_prefix():
    probs = [0.99, 0.5, 0.95, 0.9, 0.2]
    # prefix means of 1 - p: 0.01, 0.03, 0.0533, 0.165, 0.292
    assert control_fdr(probs, 0.05) == [0, 2]
    assert control_fdr(probs, 0.06) == [0, 2, 3]
    assert control_fdr(probs, 1.0) == [0, 2, 3, 1, 4]
    assert control_fdr(probs, 0.001) == []


def test_control_fdr_expected_rate_bounded():
    probs = [i / 100 for i in range(101)]
    for alpha in (0.01, 0.05, 0.1, 0.3):
        accepted = control_fdr(probs, alpha)
        assert sum(1 - probs[i] for i in accepted) / max(1, len(accepted)) <= alpha + 1e-12


def test_control_fdr_is_monotone_in_alpha():
    probs = [0.999, 0.97, 0.9, 0.9, 0.85, 0.6, 0.4, 0.1, 0.0]
    accepted = [set(control_fdr(probs, a)) for a in (0.01, 0.02, 0.05, 0.1, 0.2, 0.5, 1.0)]
    for stricter, looser in zip(accepted, accepted[1:]):
        assert stricter <= looser


def test_control_fdr_keeps_ties_together():
    # accepting one of the two 0.9 calls alone would satisfy alpha
    probs = [1.0, 0.9, 0.9]
    assert control_fdr(probs, 0.05) == [0]
    assert control_fdr(probs, 0.07) == [0, 1, 2]


def test_control_fdr_edge_cases():
    assert control_fdr([], 0.05) == []
    assert control_fdr([1.0, 1.0], 0.01) == [0, 1]
    for bad in (0.0, -0.1, 1.5, float("nan"), "x"):
        with pytest.raises(ConfigError):
            control_fdr([0.9], bad)
    with pytest.raises(ConfigError):
        control_fdr([1.2], 0.05)


@pytest.mark.parametrize(
    "bayes_factor, expected",
    [
        (0.5, KassRaftery.NONE),
        (1.0, KassRaftery.NONE),
        (2.0, KassRaftery.BARELY),
        (3.0, KassRaftery.BARELY),
        (10.0, KassRaftery.POSITIVE),
        (20.0, KassRaftery.POSITIVE),
        (100.0, KassRaftery.STRONG),
        (150.0, KassRaftery.STRONG),
        (151.0, KassRaftery.VERY_STRONG),
    ],
)
def test_kass_raftery_categories(bayes_factor, expected):
    assert KassRaftery.from_log_bayes_factor(math.log(bayes_factor)) is expected


def test_kass_raftery_parse():
    assert KassRaftery.parse("very-strong") is KassRaftery.VERY_STRONG
    assert KassRaftery.parse(" Positive ") is KassRaftery.POSITIVE
    with pytest.raises(ConfigError):
        KassRaftery.parse("decisive")


def test_posterior_odds_evidence():
    assert posterior_odds_evidence(0.0) is KassRaftery.NONE
    assert posterior_odds_evidence(0.5) is KassRaftery.NONE
    assert posterior_odds_evidence(0.7) is KassRaftery.BARELY
    assert posterior_odds_evidence(0.99) is KassRaftery.STRONG
    assert posterior_odds_evidence(1.0) is KassRaftery.VERY_STRONG


def test_filter_by_odds_sums_events_and_skips_invalid():
    calls = [
        {"somatic": 0.999, "germline": 0.0},
        {"somatic": 0.6, "germline": 0.39},
        None,
        {"somatic": 0.1, "germline": 0.1},
    ]
    assert filter_by_odds(calls, ["somatic"], KassRaftery.STRONG) == [0]
    assert filter_by_odds(calls, ["somatic", "germline"], KassRaftery.STRONG) == [0, 1]
    assert filter_by_odds(calls, ["somatic"], KassRaftery.NONE) == [0, 1, 3]
    with pytest.raises(ConfigError):
        filter_by_odds(calls, [], KassRaftery.NONE)


def test_filter_by_odds_is_monotone():
    calls = [{"somatic": p / 20} for p in range(21)]
    kept = [set(filter_by_odds(calls, ["somatic"], level)) for level in KassRaftery]
    for weaker, stronger in zip(kept, kept[1:]):
        assert stronger <= weaker


def _write_calls(path, items):
    events = tumor_normal_events()
    with CallWriter(path, contigs=[("chr1", 10000)], events=events) as writer:
        for i, (kind, length, somatic) in enumerate(items):
            pos0 = 100 + 10 * i
            if kind == SNV:
                cand = Candidate("chr1", pos0, "A", "C", SNV, 1, f"v{i}")
            elif kind == DEL:
                cand = Candidate("chr1", pos0, "A" * (length + 1), "A", DEL, length, f"v{i}")
            else:
                cand = Candidate("chr1", pos0, "A", "A" + "C" * length, INS, length, f"v{i}")
            if somatic is None:
                call = Call(candidate=cand, valid=False, error="nan")
            else:
                rest = (1.0 - somatic) / 2
                call = Call(
                    candidate=cand,
                    log_probs={
                        "germline": math.log(rest),
                        "somatic": math.log(somatic),
                        "absent": math.log(rest),
                    },
                )
            writer.write(call)
    return read_calls(path)[1]


def test_control_fdr_records_by_type_and_length(tmp_path):
    records = _write_calls(
        tmp_path / "calls.vcf",
        [
            (SNV, 1, 0.99),
            (DEL, 3, 0.99),
            (SNV, 1, 0.5),
            (SNV, 1, None),
            (DEL, 30, 0.99),
            (SNV, 1, 0.98),
        ],
    )
    kept, stats = control_fdr_records(records, ["somatic"], 0.05, VariantType(SNV))
    assert [r.id for r in kept] == ["v0", "v5"]
    assert stats["records_other_type"] == 2
    assert stats["records_invalid"] == 1
    assert stats["records_kept"] == 2

    kept, _ = control_fdr_records(records, ["somatic"], 0.05, VariantType(DEL, 1, 10))
    assert [r.id for r in kept] == ["v1"]


def test_filter_records_by_odds(tmp_path):
    records = _write_calls(tmp_path / "calls.vcf.gz", [(SNV, 1, 0.999), (INS, 2, 0.6), (SNV, 1, None)])
    kept = filter_records_by_odds(records, ["somatic"], KassRaftery.STRONG)
    assert [r.id for r in kept] == ["v0"]
    kept = filter_records_by_odds(records, ["somatic", "germline"], KassRaftery.BARELY)
    assert [r.id for r in kept] == ["v0", "v1"]
