import logging
import math
import os
import re
from dataclasses import dataclass
from pathlib import Path

from matplotlib.figure import Figure

from .stats import EndpointStats, Histogram

BAR_COLOR = "#00516f"
BOX_COLOR = "#e7e7e4"

@dataclass
class ExportResult:
    ok: bool
    filename: str
    path: str
    histogram: Histogram
    stats: EndpointStats

def _round_half_up(x: float) -> int:
    return math.floor(x + 0.5)

def export_filename(endpoint_key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_\-]", "_", endpoint_key) + "-hist.jpg"

def _num(v: float) -> int | float:
    return int(v) if float(v).is_integer() else v

def bin_labels(hist: Histogram) -> list[str]:
    return [f"{_num(b.range_start)}-{_num(b.range_end)}ms" for b in hist.bins]

def stats_summary(stats: EndpointStats) -> list[str]:
    def ms(v: float | None) -> str:
        return f"{_round_half_up(v)} ms" if v is not None else "n/a"

    return [
        f"Samples: {stats.samples}",
        f"Mean: {ms(stats.mean)}",
        f"p5: {ms(stats.p5)}",
        f"p20: {ms(stats.p20)}",
        f"p80: {ms(stats.p80)}",
        f"p95: {ms(stats.p95)}",
        f"Success rate: {_round_half_up(stats.success_rate * 100)}%",
        f"Failure rate: {_round_half_up(stats.failure_rate * 100)}%",
        f"Timeout rate: {_round_half_up(stats.timeout_rate * 100)}%",
    ]

class ChartExporter:
    """
    Render a latency histogram with a stats box and write it as a JPEG.

    Every export builds its own Figure, so nothing is shared between calls.
    """
    def __init__(self, output_dir: str | os.PathLike = "exports", width_px: int = 1200, height_px: int = 600, quality: int = 80):
        self.output_dir = Path(output_dir)
        self.width_px = width_px
        self.height_px = height_px
        self.quality = quality
        self._log = logging.getLogger(__name__)

    def render(self, endpoint_key: str, hist: Histogram, stats: EndpointStats) -> Figure:
        dpi = 100
        fig = Figure(figsize=(self.width_px / dpi, self.height_px / dpi), dpi=dpi)
        ax = fig.add_subplot()
        labels = bin_labels(hist)
        ax.bar(range(len(labels)), hist.counts, width=0.95, color=BAR_COLOR)
        ax.set_xticks(range(len(labels)))
        ax.set_xticklabels(labels, rotation=45, ha="right", fontsize=8)
        ax.set_title(f"{endpoint_key} response time distribution", fontsize=16)
        ax.set_xlabel("Response time (ms)", fontsize=12)
        ax.set_ylabel("Frequency", fontsize=12)
        ax.text(
            0.99, 0.7, "\n".join(stats_summary(stats)),
            transform=ax.transAxes, ha="right", va="bottom", fontsize=11,
            bbox={"facecolor": BOX_COLOR, "edgecolor": "black", "boxstyle": "square,pad=0.5"},
        )
        fig.tight_layout()
        return fig

    def export(self, endpoint_key: str, hist: Histogram, stats: EndpointStats) -> ExportResult:
        fname = export_filename(endpoint_key)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / fname
        fig = self.render(endpoint_key, hist, stats)
        fig.savefig(path, format="jpg", pil_kwargs={"quality": self.quality})
        self._log.info(
            "histogram exported",
            extra={"event": "export.done", "extra_fields": {
                "endpoint": endpoint_key,
                "file": str(path),
                "bins": len(hist.bins),
                "samples": hist.samples,
            }},
        )
        return ExportResult(ok=True, filename=fname, path=str(path), histogram=hist, stats=stats)
