from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pysam

from . import __version__
from .afreq import AlleleFreqGrid
from .caller import ON_MODEL_ERROR_ABORT, ON_MODEL_ERROR_FLAG, CallerConfig, PairCaller, build_grid, call_candidates
from .candidates import CallWriter, CandidateReader, ObservationWriter, read_calls, write_records
from .errors import ConfigError
from .estimation import (
    MutationRateEstimate,
    alignment_properties_to_dict,
    estimate_alignment_properties,
    read_frequencies,
)
from .events import GERMLINE_CONTROL_CONTINUOUS, GERMLINE_CONTROL_DISCRETE, EventSet, tumor_normal_events
from .filtration import KassRaftery, control_fdr_records, filter_records_by_odds
from .models import VARIANT_KINDS, Call, InsertSize, VariantType
from .plotting import plot_event_counts, plot_mutation_rate_fit, plot_posterior_hist
from .priors import PRIOR_FULL, PRIOR_KINDS, PriorConfig, PriorModel, build_prior_model
from .report import render_report
from .sample import Sample, SampleConfig
from .toy_data import make_toy_data
from .utils import ensure_outdir, open_textmaybe_gzip, write_json
from .validation import check_bam_index, check_reference, check_vcf_input


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if p != "-" and not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    sys.stderr.write(f"{err.__class__.__name__}: {err}\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _bam_contigs(bam_path: str) -> List[Tuple[str, Optional[int]]]:
    with pysam.AlignmentFile(bam_path, "rb") as bam:
        return list(zip(bam.header.references, bam.header.lengths))


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")
    p.add_argument("--log-file", default=None, help="Also write the log to this file.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="paircall",
        description=(
            "paircall: Bayesian variant calling from a pair of samples (tumor/normal). "
            "Computes posterior probabilities of germline, somatic and absent events and "
            "controls the false discovery rate of the resulting calls."
        ),
    )
    p.add_argument("--version", action="version", version=f"paircall {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny reference, tumor/normal BAMs and candidate VCF for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # call
    # -----------------
    c = sub.add_parser("call", help="Call variants.")
    csub = c.add_subparsers(dest="callcmd", required=True)
    tn = csub.add_parser(
        "tumor-normal",
        help="Compute germline/somatic/absent posteriors for candidates from a tumor and a normal BAM.",
    )
    tn.add_argument("--tumor", required=True, type=_path_exists, help="Tumor BAM (sorted, indexed).")
    tn.add_argument("--normal", required=True, type=_path_exists, help="Normal BAM (sorted, indexed).")
    tn.add_argument(
        "--candidates", default="-", type=_path_exists, help="Candidate VCF/BCF (default: stdin)."
    )
    tn.add_argument("--output", default="-", help="Output VCF/BCF (default: stdout).")
    tn.add_argument(
        "--reference", default=None, type=_path_exists, help="Reference FASTA; enables indel realignment."
    )

    m = tn.add_argument_group("model")
    m.add_argument("--purity", type=float, default=1.0, help="Tumor purity (0-1).")
    m.add_argument("--prior", choices=PRIOR_KINDS, default=PRIOR_FULL, help="Prior model.")
    m.add_argument("--ploidy", type=int, default=2, help="Ploidy of the normal sample.")
    m.add_argument("--case-ploidy", type=int, default=None, help="Tumor ploidy (flat-two-sample prior).")
    m.add_argument("--amplification", type=int, default=1, help="Copy-number amplification factor.")
    m.add_argument("--heterozygosity", type=float, default=1.25e-4, help="Expected heterozygosity.")
    m.add_argument(
        "--effective-mutation-rate",
        type=float,
        default=None,
        help="Somatic effective mutation rate (see 'paircall estimate mutation-rate').",
    )
    m.add_argument("--deletion-factor", type=float, default=0.03, help="Per-base somatic deletion factor.")
    m.add_argument("--insertion-factor", type=float, default=0.01, help="Per-base somatic insertion factor.")
    m.add_argument(
        "--genome-size", type=int, default=None, help="Genome size (default: sum of BAM contig lengths)."
    )
    m.add_argument(
        "--min-somatic-af", type=float, default=0.05, help="Smallest tumor AF counted as somatic."
    )
    m.add_argument(
        "--germline-control",
        choices=[GERMLINE_CONTROL_DISCRETE, GERMLINE_CONTROL_CONTINUOUS],
        default=GERMLINE_CONTROL_DISCRETE,
        help="Normal AF region of the germline event.",
    )
    m.add_argument("--grid-points", type=int, default=201, help="Regular points of the tumor AF grid.")
    m.add_argument(
        "--model-admixture",
        action="store_true",
        help="Let contaminating normal cells in the tumor carry the normal AF.",
    )

    e = tn.add_argument_group("evidence")
    e.add_argument("--insert-size-mean", type=float, default=None, help="Tumor insert size mean (default: estimate).")
    e.add_argument("--insert-size-sd", type=float, default=None, help="Tumor insert size sd (default: estimate).")
    e.add_argument(
        "--normal-insert-size-mean",
        type=float,
        default=None,
        help="Normal insert size mean (default: the tumor value, else estimate).",
    )
    e.add_argument(
        "--normal-insert-size-sd",
        type=float,
        default=None,
        help="Normal insert size sd (default: the tumor value, else estimate).",
    )
    e.add_argument("--no-fragment-evidence", action="store_true", help="Ignore insert sizes.")
    e.add_argument("--use-secondary", action="store_true", help="Include secondary alignments.")
    e.add_argument("--no-mapq", action="store_true", help="Ignore mapping qualities.")
    e.add_argument("--adjust-mapq", action="store_true", help="Average mapping probabilities per locus.")
    e.add_argument("--keep-duplicates", action="store_true", help="Do not skip duplicate reads.")
    e.add_argument("--min-baseq", type=int, default=20, help="Minimum base quality for SNV evidence.")
    e.add_argument("--pileup-window", type=int, default=2500, help="Read fetch window around candidates.")
    e.add_argument("--spurious-ins-rate", type=float, default=2.8e-6, help="Spurious insertion rate.")
    e.add_argument("--spurious-del-rate", type=float, default=5.1e-6, help="Spurious deletion rate.")
    e.add_argument("--ins-extension-rate", type=float, default=0.0, help="Spurious insertion extension rate.")
    e.add_argument("--del-extension-rate", type=float, default=0.0, help="Spurious deletion extension rate.")
    e.add_argument("--max-indel-dist", type=int, default=50, help="Max distance of a read's indel to the locus.")
    e.add_argument(
        "--max-indel-len-diff", type=int, default=20, help="Max length difference of a read's indel."
    )
    e.add_argument("--indel-window", type=int, default=100, help="Haplotype flank for indel realignment.")

    r = tn.add_argument_group("run")
    r.add_argument("--omit-snvs", action="store_true", help="Skip SNV candidates.")
    r.add_argument("--omit-indels", action="store_true", help="Skip indel candidates.")
    r.add_argument("--max-indel-len", type=int, default=1000, help="Skip longer indels.")
    r.add_argument("--exclusive-end", action="store_true", help="Interpret and write END as exclusive.")
    r.add_argument(
        "--on-model-error",
        choices=[ON_MODEL_ERROR_ABORT, ON_MODEL_ERROR_FLAG],
        default=ON_MODEL_ERROR_ABORT,
        help="Abort, or flag the call and continue, when posteriors are invalid.",
    )
    r.add_argument("--threads", type=int, default=1, help="Worker threads.")
    r.add_argument("--chunk-size", type=int, default=64, help="Candidates per batch handed to workers.")
    r.add_argument("--observations", default=None, help="Write per-read observations to this TSV.GZ.")
    r.add_argument("--report-dir", default=None, help="Write summary.json, plots and report.html here.")
    r.add_argument("--progress", action="store_true", help="Show a progress bar.")
    _add_common(tn)

    # -----------------
    # filter
    # -----------------
    f = sub.add_parser("filter", help="Filter calls by posterior probability.")
    fsub = f.add_subparsers(dest="filtercmd", required=True)

    fdr = fsub.add_parser("control-fdr", help="Keep the largest set of calls with expected FDR <= alpha.")
    fdr.add_argument("calls", type=_path_exists, help="Calls VCF/BCF written by 'paircall call'.")
    fdr.add_argument("--events", nargs="+", required=True, help="Events whose probabilities are summed.")
    fdr.add_argument("--fdr", type=float, required=True, help="FDR threshold alpha in (0, 1].")
    fdr.add_argument("--var", choices=VARIANT_KINDS, required=True, help="Variant type to control.")
    fdr.add_argument("--min-len", type=int, default=None, help="Minimum indel length (inclusive).")
    fdr.add_argument("--max-len", type=int, default=None, help="Maximum indel length (exclusive).")
    fdr.add_argument("--output", default="-", help="Output VCF/BCF (default: stdout).")
    _add_common(fdr)

    odds = fsub.add_parser("posterior-odds", help="Keep calls with at least the given Kass-Raftery evidence.")
    odds.add_argument("calls", type=_path_exists, help="Calls VCF/BCF written by 'paircall call'.")
    odds.add_argument("--events", nargs="+", required=True, help="Events whose probabilities are summed.")
    odds.add_argument(
        "--odds",
        required=True,
        choices=[k.name.lower().replace("_", "-") for k in KassRaftery],
        help="Minimum evidence category.",
    )
    odds.add_argument("--output", default="-", help="Output VCF/BCF (default: stdout).")
    _add_common(odds)

    # -----------------
    # estimate
    # -----------------
    est = sub.add_parser("estimate", help="Estimate model parameters.")
    esub = est.add_subparsers(dest="estcmd", required=True)

    mr = esub.add_parser(
        "mutation-rate",
        help="Fit the effective mutation rate from somatic allele frequencies (one per line).",
    )
    mr.add_argument("freqs", nargs="?", default="-", type=_path_exists, help="Input file (default: stdin).")
    mr.add_argument("--min-af", type=float, default=None, help="Ignore frequencies below this.")
    mr.add_argument("--max-af", type=float, default=None, help="Ignore frequencies above this.")
    mr.add_argument("--fit", default=None, help="Write observed and fitted values (.json or TSV).")
    mr.add_argument("--plot", default=None, help="Write a PNG of the fit.")
    _add_common(mr)

    ap = esub.add_parser("alignment-properties", help="Insert size and MAPQ summary of a BAM as JSON.")
    ap.add_argument("bam", type=_path_exists, help="BAM file.")
    ap.add_argument("--max-reads", type=int, default=10000, help="Number of read pairs to inspect.")
    ap.add_argument("--min-reads", type=int, default=100, help="Minimum usable read pairs.")
    _add_common(ap)

    return p


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def _sample_config(args: argparse.Namespace) -> SampleConfig:
    """Validated evidence options; insert sizes are filled in per sample later."""
    return SampleConfig(
        purity=args.purity,
        pileup_window=args.pileup_window,
        use_fragment_evidence=False,
        use_secondary=args.use_secondary,
        use_mapq=not args.no_mapq,
        adjust_mapq=args.adjust_mapq,
        skip_duplicates=not args.keep_duplicates,
        min_baseq=args.min_baseq,
        prob_spurious_ins=args.spurious_ins_rate,
        prob_spurious_del=args.spurious_del_rate,
        prob_ins_extend=args.ins_extension_rate,
        prob_del_extend=args.del_extension_rate,
        max_indel_dist=args.max_indel_dist,
        max_indel_len_diff=args.max_indel_len_diff,
        indel_haplotype_window=args.indel_window,
    )


def _explicit_insert_size(mean: Optional[float], sd: Optional[float], flag: str) -> Optional[InsertSize]:
    if mean is None and sd is None:
        return None
    if mean is None or sd is None:
        raise ConfigError(f"{flag}-mean and {flag}-sd must be given together")
    return InsertSize(mean=mean, sd=sd)


def _insert_size(args: argparse.Namespace, bam: str, explicit: Optional[InsertSize]) -> Optional[InsertSize]:
    if args.no_fragment_evidence:
        return None
    if explicit is not None:
        return explicit
    return estimate_alignment_properties(bam).insert_size


class _RunStats:
    """Collects per-event posterior histograms for the report."""

    def __init__(self, events: List[str]) -> None:
        self.bin_edges = np.linspace(0.0, 1.0, 51)
        self.hist = {e: np.zeros(len(self.bin_edges) - 1, dtype=np.int64) for e in events}
        self.top = {e: 0 for e in events}

    def add(self, call: Call) -> None:
        if not call.valid:
            return
        probs = call.probs()
        for name, p in probs.items():
            self.hist[name] += np.histogram([p], bins=self.bin_edges)[0]
        self.top[max(probs, key=probs.get)] += 1


def _build_prior(prior_config: PriorConfig, grid: AlleleFreqGrid, events: EventSet) -> PriorModel:
    """Prior model for the run; the events must partition its support."""
    prior = build_prior_model(prior_config, grid)
    events.validate_partition(events.masks(grid, prior.control_afs), prior.log_table())
    return prior


def cmd_call_tumor_normal(args: argparse.Namespace) -> int:
    log_path = Path(args.log_file) if args.log_file else None
    _setup_logging(args.verbose, logfile=log_path)
    logger = logging.getLogger("paircall")
    logger.info("paircall %s", __version__)

    try:
        # options first, before any input is read
        base_sample_config = _sample_config(args)
        caller_config = CallerConfig(
            omit_snvs=args.omit_snvs,
            omit_indels=args.omit_indels,
            max_indel_len=args.max_indel_len,
            exclusive_end=args.exclusive_end,
            on_model_error=args.on_model_error,
            threads=args.threads,
            chunk_size=args.chunk_size,
            model_admixture=args.model_admixture,
            grid_points=args.grid_points,
        )
        events = tumor_normal_events(
            min_somatic_af=args.min_somatic_af,
            ploidy=args.ploidy,
            amplification=args.amplification,
            germline_control=args.germline_control,
        )
        prior_config = PriorConfig(
            kind=args.prior,
            ploidy=args.ploidy,
            case_ploidy=args.case_ploidy,
            amplification=args.amplification,
            heterozygosity=args.heterozygosity,
            effective_mutation_rate=args.effective_mutation_rate,
            deletion_factor=args.deletion_factor,
            insertion_factor=args.insertion_factor,
            genome_size=args.genome_size,
        )
        grid = build_grid(prior_config, events, caller_config.grid_points)
        prior = None
        if prior_config.kind != PRIOR_FULL or prior_config.genome_size is not None:
            prior = _build_prior(prior_config, grid, events)
        tumor_isize = _explicit_insert_size(args.insert_size_mean, args.insert_size_sd, "--insert-size")
        normal_isize = (
            _explicit_insert_size(args.normal_insert_size_mean, args.normal_insert_size_sd, "--normal-insert-size")
            or tumor_isize
        )

        check_bam_index(args.tumor)
        check_bam_index(args.normal)
        check_vcf_input(args.candidates)
        if args.reference:
            check_reference(args.reference)

        contigs = _bam_contigs(args.tumor)
        if prior is None:
            prior_config = replace(prior_config, genome_size=int(sum(length or 0 for _, length in contigs)))
            prior = _build_prior(prior_config, grid, events)

        use_fragments = not args.no_fragment_evidence
        tumor_config = replace(
            base_sample_config,
            insert_size=_insert_size(args, args.tumor, tumor_isize),
            use_fragment_evidence=use_fragments,
        )
        normal_config = replace(
            base_sample_config,
            insert_size=_insert_size(args, args.normal, normal_isize),
            use_fragment_evidence=use_fragments,
            purity=1.0,
        )

        def make_caller() -> PairCaller:
            tumor = Sample(args.tumor, tumor_config, reference=args.reference, name="tumor")
            normal = Sample(args.normal, normal_config, reference=args.reference, name="normal")
            return PairCaller(tumor, normal, prior, events, caller_config)

        # fail on unusable inputs before writing anything
        make_caller().close()

        stats = _RunStats(events.names)
        obs_writer = ObservationWriter(args.observations) if args.observations else None
        keep_obs = obs_writer is not None
        with CandidateReader(args.candidates, exclusive_end=args.exclusive_end) as reader, CallWriter(
            args.output,
            contigs=contigs,
            events=events,
            exclusive_end=args.exclusive_end,
            source=f"paircall {__version__}",
        ) as writer:

            def emit(call: Call) -> None:
                writer.write(call)
                stats.add(call)
                if obs_writer is not None:
                    obs_writer.write(call)
                    call.observations = {}

            try:
                run = call_candidates(
                    reader,
                    make_caller,
                    caller_config,
                    emit=emit,
                    keep_observations=keep_obs,
                    progress=bool(args.progress),
                )
            finally:
                if obs_writer is not None:
                    obs_writer.close()
            run["counts"].update({f"reader_{k}": v for k, v in reader.stats.items()})

        if args.report_dir:
            _write_report(args, run, stats, prior_config, tumor_config, normal_config)
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def _write_report(
    args: argparse.Namespace,
    run: Dict[str, Any],
    stats: _RunStats,
    prior_config: PriorConfig,
    tumor_config: SampleConfig,
    normal_config: SampleConfig,
) -> None:
    outdir = ensure_outdir(args.report_dir)
    plots_dir = outdir / "plots"
    plots_dir.mkdir(parents=True, exist_ok=True)

    posterior_png = plots_dir / "posterior_hist.png"
    event_counts_png = plots_dir / "event_counts.png"
    plot_posterior_hist(
        bin_edges=stats.bin_edges.tolist(),
        counts={k: v.tolist() for k, v in stats.hist.items()},
        out_png=posterior_png,
    )
    plot_event_counts(event_counts=stats.top, out_png=event_counts_png)

    summary = {
        "version": __version__,
        "inputs": {
            "tumor": args.tumor,
            "normal": args.normal,
            "candidates": args.candidates,
            "reference": args.reference,
        },
        "model": {
            "prior": prior_config.kind,
            "ploidy": prior_config.ploidy,
            "purity": tumor_config.purity,
            "heterozygosity": prior_config.heterozygosity,
            "effective_mutation_rate": prior_config.effective_mutation_rate,
            "genome_size": prior_config.genome_size,
            "min_somatic_af": args.min_somatic_af,
            "tumor_insert_size": _insert_size_dict(tumor_config.insert_size),
            "normal_insert_size": _insert_size_dict(normal_config.insert_size),
        },
        "counts": run["counts"],
        "calls_by_top_event": stats.top,
        "posterior_hist": {
            "bin_edges": stats.bin_edges.tolist(),
            "counts": {k: v.tolist() for k, v in stats.hist.items()},
        },
        "output": args.output,
        "observations": args.observations,
        "threads": run["threads"],
        "runtime_seconds": run["runtime_seconds"],
    }
    write_json(outdir / "summary.json", summary)
    render_report(
        outdir=outdir,
        version=__version__,
        summary=summary,
        plots={
            "posterior_hist": str(Path("plots") / posterior_png.name),
            "event_counts": str(Path("plots") / event_counts_png.name),
        },
    )


def _insert_size_dict(insert_size: Optional[InsertSize]) -> Optional[Dict[str, float]]:
    if insert_size is None:
        return None
    return {"mean": insert_size.mean, "sd": insert_size.sd}


def cmd_filter_control_fdr(args: argparse.Namespace) -> int:
    log_path = Path(args.log_file) if args.log_file else None
    _setup_logging(args.verbose, logfile=log_path)
    try:
        vartype = VariantType(args.var, min_len=args.min_len, max_len=args.max_len)
        header, records = read_calls(args.calls)
        kept, stats = control_fdr_records(records, args.events, args.fdr, vartype)
        logging.getLogger("paircall").info("control-fdr: %s", stats)
        write_records(args.output, header, kept)
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_filter_posterior_odds(args: argparse.Namespace) -> int:
    log_path = Path(args.log_file) if args.log_file else None
    _setup_logging(args.verbose, logfile=log_path)
    try:
        min_evidence = KassRaftery.parse(args.odds)
        header, records = read_calls(args.calls)
        kept = filter_records_by_odds(records, args.events, min_evidence)
        write_records(args.output, header, kept)
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_estimate_mutation_rate(args: argparse.Namespace) -> int:
    log_path = Path(args.log_file) if args.log_file else None
    _setup_logging(args.verbose, logfile=log_path)
    try:
        if args.freqs == "-":
            freqs = read_frequencies(sys.stdin)
        else:
            with open_textmaybe_gzip(args.freqs, "rt") as fh:
                freqs = read_frequencies(fh)
        estimate = MutationRateEstimate.train(freqs, min_af=args.min_af, max_af=args.max_af)
        print(estimate.effective_mutation_rate)
        if args.fit:
            if str(args.fit).endswith(".json"):
                estimate.write_json(args.fit)
            else:
                estimate.write_tsv(args.fit)
        if args.plot:
            plot_mutation_rate_fit(estimate=estimate, out_png=args.plot)
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_estimate_alignment_properties(args: argparse.Namespace) -> int:
    log_path = Path(args.log_file) if args.log_file else None
    _setup_logging(args.verbose, logfile=log_path)
    try:
        props = estimate_alignment_properties(args.bam, max_reads=args.max_reads, min_reads=args.min_reads)
        print(json.dumps(alignment_properties_to_dict(props), indent=2))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "call":
        if args.callcmd == "tumor-normal":
            return cmd_call_tumor_normal(args)
        parser.error(f"Unknown call subcommand: {args.callcmd}")
    if args.cmd == "filter":
        if args.filtercmd == "control-fdr":
            return cmd_filter_control_fdr(args)
        if args.filtercmd == "posterior-odds":
            return cmd_filter_posterior_odds(args)
        parser.error(f"Unknown filter subcommand: {args.filtercmd}")
    if args.cmd == "estimate":
        if args.estcmd == "mutation-rate":
            return cmd_estimate_mutation_rate(args)
        if args.estcmd == "alignment-properties":
            return cmd_estimate_alignment_properties(args)
        parser.error(f"Unknown estimate subcommand: {args.estcmd}")

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
