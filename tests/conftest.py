# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for bisulfite deduplication testing.

This module provides shared fixtures for testing deduplicate_bisulfite.py. It
includes builders for SAM and legacy record lines, header text, and helpers for
writing small SAM/BAM inputs to a temporary directory.
"""

import re
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

SAM_HEADER = (
    "@HD\tVN:1.0\tSO:none\n"
    "@SQ\tSN:chr1\tLN:100000\n"
    "@SQ\tSN:chr2\tLN:100000\n"
)

SINGLE_END_PG = '@PG\tID:Bismark\tVN:v0.24.2\tCL:"bismark --genome ref reads.fq.gz"\n'
PAIRED_END_PG = (
    '@PG\tID:Bismark\tVN:v0.24.2\tCL:"bismark --genome ref -1 r1.fq.gz -2 r2.fq.gz"\n'
)


def _query_length(cigar: str) -> int:
    return sum(int(n) for n, op in re.findall(r"(\d+)([MI])", cigar))


def sam_line(  # noqa: PLR0913
    qname: str = "read_001",
    flag: int = 0,
    chrom: str = "chr1",
    pos: int = 100,
    cigar: str = "20M",
    meth: str | None = None,
    xr: str | None = "CT",
    xg: str | None = "CT",
    mate_pos: int = 0,
) -> str:
    """Build one Bismark-style SAM record line (with trailing newline)."""
    qlen = _query_length(cigar)
    seq = "A" * qlen
    qual = "I" * qlen
    rnext = "=" if mate_pos else "*"
    tags = ["NM:i:0", f"MD:Z:{qlen}", f"XM:Z:{meth if meth is not None else '.' * qlen}"]
    if xr is not None:
        tags.append(f"XR:Z:{xr}")
    if xg is not None:
        tags.append(f"XG:Z:{xg}")
    fields = [
        qname,
        str(flag),
        chrom,
        str(pos),
        "255",
        cigar,
        rnext,
        str(mate_pos),
        "0",
        seq,
        qual,
        *tags,
    ]
    return "\t".join(fields) + "\n"


def mate_pair(  # noqa: PLR0913
    qname: str = "pair_001",
    chrom: str = "chr1",
    pos1: int = 100,
    cigar1: str = "20M",
    pos2: int = 150,
    cigar2: str = "20M",
    xr: str = "CT",
    xg: str = "CT",
    meth1: str | None = None,
    meth2: str | None = None,
) -> list[str]:
    """Two consecutive mate lines; only mate 1's XR/XG drive classification."""
    second_xr = "GA" if xr == "CT" else "CT"
    return [
        sam_line(qname, 99, chrom, pos1, cigar1, meth1, xr, xg, mate_pos=pos2),
        sam_line(qname, 147, chrom, pos2, cigar2, meth2, second_xr, xg, mate_pos=pos1),
    ]


def vanilla_line(  # noqa: PLR0913
    read_id: str = "read_001",
    strand: str = "+",
    chrom: str = "chr1",
    start: int = 100,
    end: int = 119,
    meth: str = "....z...",
    meth2: str | None = None,
) -> str:
    """Legacy tab-delimited record; adding `meth2` makes it a paired-end line."""
    fields = [read_id, strand, chrom, str(start), str(end), "ACGTACGT", meth]
    if meth2 is not None:
        fields += ["TGCATGCA", meth2, "CT", "CT", "GA"]
    else:
        fields += ["CT", "CT"]
    return "\t".join(fields) + "\n"


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def single_end_sam(temp_dir: Path) -> Path:
    """Single-end SAM with one duplicate pair and one distinct read."""
    path = temp_dir / "sample_se.sam"
    path.write_text(
        SAM_HEADER
        + SINGLE_END_PG
        + sam_line("r1", 0, "chr1", 100, "20M")
        + sam_line("r2", 0, "chr1", 100, "20M")
        + sam_line("r3", 16, "chr1", 100, "20M")
        + sam_line("r4", 0, "chr2", 100, "20M")
    )
    return path


@pytest.fixture
def paired_end_sam(temp_dir: Path) -> Path:
    """Paired-end SAM: two identical fragments and one with a different end."""
    path = temp_dir / "sample_pe.sam"
    lines = [SAM_HEADER, PAIRED_END_PG]
    lines += mate_pair("p1", pos1=100, pos2=150)
    lines += mate_pair("p2", pos1=100, pos2=150)
    lines += mate_pair("p3", pos1=100, pos2=160)
    path.write_text("".join(lines))
    return path


@pytest.fixture
def single_end_bam(single_end_sam: Path, temp_dir: Path) -> Path:
    """The single-end SAM fixture converted to BAM with pysam."""
    bam_path = temp_dir / "sample_se.bam"
    with (
        pysam.AlignmentFile(str(single_end_sam), "r") as sam_in,
        pysam.AlignmentFile(str(bam_path), "wb", template=sam_in) as bam_out,
    ):
        for read in sam_in:
            bam_out.write(read)
    return bam_path


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
