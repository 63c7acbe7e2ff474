import subprocess
import sys
from pathlib import Path


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "paircall"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def _call_args(toy: dict, out: Path) -> list[str]:
    return [
        "call",
        "tumor-normal",
        "--tumor",
        toy["tumor_bam"],
        "--normal",
        toy["normal_bam"],
        "--candidates",
        toy["candidates_vcf"],
        "--output",
        str(out),
    ]


def test_make_toy_data_dry_run(tmp_path: Path) -> None:
    cp = _run_cli(["make-toy-data", "--outdir", str(tmp_path / "toy"), "--dry-run"])
    assert cp.returncode == 0
    assert "Would write toy data" in cp.stdout
    assert not (tmp_path / "toy").exists()


def test_full_prior_without_rate_is_a_config_error(toy_data, tmp_path: Path) -> None:
    out = tmp_path / "calls.vcf"
    cp = _run_cli(_call_args(toy_data, out))
    assert cp.returncode == 2
    assert "ConfigError" in cp.stderr
    assert "--effective-mutation-rate" in cp.stderr
    assert not out.exists()


def test_invalid_purity_is_rejected(toy_data, tmp_path: Path) -> None:
    cp = _run_cli(_call_args(toy_data, tmp_path / "calls.vcf") + ["--prior", "flat", "--purity", "1.5"])
    assert cp.returncode == 2
    assert "purity" in cp.stderr


def test_flat_prior_runs_without_rate(toy_data, tmp_path: Path) -> None:
    out = tmp_path / "calls.vcf"
    cp = _run_cli(
        _call_args(toy_data, out) + ["--prior", "flat", "--no-fragment-evidence", "--omit-indels"]
    )
    assert cp.returncode == 0, cp.stderr
    body = [line for line in out.read_text(encoding="utf-8").splitlines() if not line.startswith("#")]
    assert len(body) == 3


def test_missing_index_suggests_samtools(toy_data, tmp_path: Path) -> None:
    bam = tmp_path / "noindex.bam"
    bam.write_bytes(Path(toy_data["tumor_bam"]).read_bytes())
    cp = _run_cli(
        [
            "call",
            "tumor-normal",
            "--tumor",
            str(bam),
            "--normal",
            toy_data["normal_bam"],
            "--candidates",
            toy_data["candidates_vcf"],
            "--prior",
            "flat",
        ]
    )
    assert cp.returncode == 2
    assert "samtools index" in cp.stderr


def test_missing_input_path_is_an_argparse_error(tmp_path: Path) -> None:
    cp = _run_cli(["estimate", "alignment-properties", str(tmp_path / "missing.bam")])
    assert cp.returncode == 2
    assert "Path does not exist" in cp.stderr


def test_fdr_threshold_out_of_range(toy_data, tmp_path: Path) -> None:
    calls = tmp_path / "calls.vcf"
    cp = _run_cli(_call_args(toy_data, calls) + ["--prior", "flat", "--no-fragment-evidence"])
    assert cp.returncode == 0, cp.stderr
    cp = _run_cli(["filter", "control-fdr", str(calls), "--events", "somatic", "--fdr", "1.5", "--var", "SNV"])
    assert cp.returncode == 2
    assert "FDR threshold" in cp.stderr


def test_unknown_event_is_reported(toy_data, tmp_path: Path) -> None:
    calls = tmp_path / "calls.vcf"
    cp = _run_cli(_call_args(toy_data, calls) + ["--prior", "flat", "--no-fragment-evidence"])
    assert cp.returncode == 0, cp.stderr
    cp = _run_cli(["filter", "posterior-odds", str(calls), "--events", "loh", "--odds", "positive"])
    assert cp.returncode == 2
    assert "PROB_LOH" in cp.stderr


def test_mutation_rate_needs_two_frequencies(tmp_path: Path) -> None:
    path = tmp_path / "afs.txt"
    path.write_text("0.3\n", encoding="utf-8")
    cp = _run_cli(["estimate", "mutation-rate", str(path)])
    assert cp.returncode == 2
    assert "InputError" in cp.stderr


def test_bad_options_are_reported_before_inputs_are_checked(toy_data, tmp_path: Path) -> None:
    bam = tmp_path / "noindex.bam"
    bam.write_bytes(Path(toy_data["tumor_bam"]).read_bytes())
    args = _call_args(toy_data, tmp_path / "calls.vcf")
    args[args.index("--tumor") + 1] = str(bam)
    cp = _run_cli(args)
    assert cp.returncode == 2
    assert "ConfigError" in cp.stderr
    assert "--effective-mutation-rate" in cp.stderr
    assert "samtools index" not in cp.stderr


def test_normal_insert_size_can_differ_from_tumor(toy_data, tmp_path: Path) -> None:
    out = tmp_path / "calls.vcf"
    cp = _run_cli(
        _call_args(toy_data, out)
        + [
            "--prior",
            "flat",
            "--omit-indels",
            "--insert-size-mean",
            "300",
            "--insert-size-sd",
            "20",
            "--normal-insert-size-mean",
            "310",
            "--normal-insert-size-sd",
            "25",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    body = [line for line in out.read_text(encoding="utf-8").splitlines() if not line.startswith("#")]
    assert len(body) == 3


def test_insert_size_mean_needs_sd(toy_data, tmp_path: Path) -> None:
    out = tmp_path / "calls.vcf"
    cp = _run_cli(_call_args(toy_data, out) + ["--prior", "flat", "--normal-insert-size-mean", "310"])
    assert cp.returncode == 2
    assert "ConfigError" in cp.stderr
    assert "must be given together" in cp.stderr
    assert not out.exists()
