"""
Chart generator
Turns aggregate SQL results into Chart.js configs rendered as QuickChart image URLs
"""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence
from urllib.parse import quote

from .config import response_config
from .data_utils import to_label

ChartType = Literal["bar", "line", "pie", "doughnut", "radar", "polarArea", "area", "horizontalBar"]

UNKNOWN_LABEL = "Không xác định"
_LABEL_TRANSLATIONS = {"male": "Nam", "female": "Nữ", "other": "Khác", "unknown": "Khác"}
_LABEL_KEY = re.compile(r"name|title|label|category|gender|type|status", re.IGNORECASE)
_STAT_KEY = re.compile(r"count|sum|avg|total|min|max|value", re.IGNORECASE)

_PIE_QUERY = re.compile(r"biểu đồ tròn|pie chart|pie|doughnut|tỉ lệ|tỷ lệ|phần trăm|percentage")
_LINE_QUERY = re.compile(
    r"biểu đồ đường|line chart|line|theo thời gian|theo tháng|theo năm|theo ngày|trend|xu hướng"
)
_RADAR_QUERY = re.compile(r"radar|so sánh|đánh giá|phân tích đa tiêu chí|nhiều tiêu chí|multi.*criteria")
_BAR_QUERY = re.compile(r"biểu đồ cột|bar chart|bar|cột")

_COLORED_TYPES = {"pie", "doughnut", "radar", "polarArea", "area"}


@dataclass(slots=True)
class ChartResult:
    url: str
    width: int
    height: int
    type: str


def _is_numeric_like(value: Any) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(float(value))
    try:
        return math.isfinite(float(str(value)))
    except ValueError:
        return False


def _to_number(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _label_text(raw: Any) -> str:
    label = "" if raw is None else str(raw).strip()
    if not label:
        return UNKNOWN_LABEL
    return _LABEL_TRANSLATIONS.get(label.lower(), label)


class ChartGenerator:
    """Generates Chart.js configurations and QuickChart URLs from result rows"""

    def __init__(self, color_palette: Optional[List[str]] = None, base_url: Optional[str] = None):
        """
        Args:
            color_palette: Custom color palette (uses config default if None)
            base_url: QuickChart endpoint (uses config default if None)
        """
        self.colors = color_palette or response_config.chart_color_palette
        self.base_url = base_url or response_config.quickchart_base_url

    def build_chart_config(
        self,
        labels: Sequence[str],
        data: Sequence[float],
        dataset_label: str,
        chart_type: ChartType = "bar",
    ) -> Dict[str, Any]:
        """Build a single-dataset Chart.js v3 config"""

        dataset: Dict[str, Any] = {"label": dataset_label, "data": list(data)}
        if chart_type in _COLORED_TYPES:
            dataset["backgroundColor"] = self.colors[: len(data)]
        if chart_type == "radar":
            dataset["borderColor"] = self.colors[0]
            dataset["pointBackgroundColor"] = list(self.colors)
            dataset["pointBorderColor"] = "#fff"
            dataset["pointHoverBackgroundColor"] = "#fff"
            dataset["pointHoverBorderColor"] = self.colors[0]
        if chart_type == "area":
            dataset.update(
                fill=True,
                borderColor=self.colors[0],
                backgroundColor=self.colors[0],
                borderWidth=2,
            )

        options: Dict[str, Any] = {"responsive": False, "animation": False}
        if chart_type == "horizontalBar":
            options["indexAxis"] = "y"
        if chart_type == "radar":
            options["scales"] = {"r": {"beginAtZero": True}}

        rendered_type = {"horizontalBar": "bar", "area": "line"}.get(chart_type, chart_type)
        return {
            "type": rendered_type,
            "data": {"labels": list(labels), "datasets": [dataset]},
            "options": options,
        }

    def build_quickchart_url(self, config: Mapping[str, Any], width: int = 800, height: int = 400) -> str:
        encoded = quote(json.dumps(config, ensure_ascii=False, separators=(",", ":")), safe="")
        return f"{self.base_url}?width={width}&height={height}&chart={encoded}"

    @staticmethod
    def detect_chart_type(
        pairs: Sequence[tuple[str, float]],
        query: Optional[str] = None,
    ) -> ChartType:
        """Pick a chart type from query keywords, or from the shape of the data"""

        count = len(pairs)
        if query:
            lowered = query.lower()
            if _PIE_QUERY.search(lowered):
                return "pie" if count <= 5 else "doughnut"
            if _LINE_QUERY.search(lowered):
                return "line"
            if _RADAR_QUERY.search(lowered):
                return "radar" if 3 <= count <= 8 else "bar"
            return "bar"

        values = [value for _, value in pairs]
        total = sum(values)
        proportional = all(value >= 0 for value in values) and total > 0
        if 2 <= count <= 5 and proportional:
            return "pie"
        if 6 <= count <= 8 and proportional:
            return "doughnut"
        max_value = max(values) if values else 0
        if 3 <= count <= 8 and max_value > 0 and all(v / max_value >= 0.1 for v in values):
            mean = total / count
            variance = sum((v - mean) ** 2 for v in values) / count
            if mean > 0 and variance / mean < 0.5:
                return "radar"
        return "bar"

    def try_build_chart(
        self,
        rows: Sequence[Mapping[str, Any]],
        chart_type: Optional[ChartType] = None,
        query: Optional[str] = None,
    ) -> Optional[ChartResult]:
        """
        Build a chart from result rows, or return None when the data is not chartable

        Args:
            rows: Result rows (dicts)
            chart_type: Forced chart type; detected when None
            query: User question used for keyword based type detection
        """
        if not rows:
            return None

        sample = rows[0]
        keys = list(sample.keys())
        numeric_keys = [key for key in keys if _is_numeric_like(sample[key])]
        if not numeric_keys:
            return None

        label_key = next((k for k in keys if _LABEL_KEY.search(k) and k not in numeric_keys), None)
        if label_key is None:
            label_key = next((k for k in keys if k not in numeric_keys), None)
        if label_key is None:
            return None

        stat_like = any(_STAT_KEY.search(key) for key in keys)
        if not stat_like and len(numeric_keys) / max(len(keys), 1) < 0.6:
            return None

        value_key = next((k for k in numeric_keys if _STAT_KEY.search(k)), numeric_keys[0])
        pairs = [(_label_text(row.get(label_key)), _to_number(row.get(value_key))) for row in rows]
        if chart_type in ("pie", "doughnut"):
            pairs = [pair for pair in pairs if pair[1] > 0]
        if not pairs:
            return None
        pairs.sort(key=lambda pair: pair[1], reverse=True)

        detected = chart_type or self.detect_chart_type(pairs, query)
        if detected not in ("pie", "doughnut"):
            pairs = pairs[: response_config.chart_top_n]
        elif chart_type is None:
            pairs = [pair for pair in pairs if pair[1] > 0] or pairs

        if detected in ("pie", "doughnut", "polarArea"):
            width, height = 600, 600
        elif detected == "radar":
            width, height = 700, 700
        else:
            width, height = 800, 400

        config = self.build_chart_config(
            [label for label, _ in pairs],
            [value for _, value in pairs],
            to_label(value_key),
            detected,
        )
        return ChartResult(
            url=self.build_quickchart_url(config, width, height),
            width=width,
            height=height,
            type=detected,
        )


chart_generator = ChartGenerator()
