"""
Floor Analytics - Analytics Engine

This module derives the loss-analysis report for a scope (range, area, machine):

- per-machine loss profiles splitting the OEE gap into availability,
  performance and quality losses, sub-allocated into the Six Big Losses
- fleet category totals rescaled to the average OEE gap
- Pareto series by category, machine, area and shift
- a severity ranking and rule-based root-cause evidence
- downtime, output, NG, OEE trend and planned-vs-actual summaries

All rules are deterministic: the same closed window over unchanged data
always yields the same category totals.
"""

import asyncio
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog

from floor_analytics.config import LossAllocationWeights, RootCauseThresholds, settings
from floor_analytics.models.telemetry import AnalyticsRange, AnalyticsScope, MachineStatus
from floor_analytics.services.availability_aggregator import clip_interval
from floor_analytics.utils.exceptions import AnalyticsError
from floor_analytics.utils.shift_calculator import SHIFT_LABELS, ShiftResolver

logger = structlog.get_logger()


CATEGORY_TYPES = {
    "Equipment Failure": "availability",
    "Setup & Adjustments": "availability",
    "Idling & Minor Stops": "availability",
    "Reduced Speed": "performance",
    "Process Defects": "quality",
    "Reduced Yield": "quality",
}

LOSS_CATEGORIES = list(CATEGORY_TYPES)

NO_LOSS_SUMMARY = "No validated loss data available yet."


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _number(value: Any) -> float:
    return float(value or 0)


def _floor_to_minute(instant: datetime) -> datetime:
    return instant.replace(second=0, microsecond=0)


def resolve_range_window(
    range_name: str,
    now: datetime,
    shift_resolver: ShiftResolver,
    shift_date: Optional[date] = None,
    shift_number: Optional[int] = None,
) -> Tuple[str, datetime, datetime, Optional[str]]:
    """
    Resolve a range selector to ``(range, start, end, shift_id)``.

    Open-ended ranges end at ``now`` floored to the minute so repeated requests
    within a minute share a cache key. An explicit shift date and number select
    that whole shift.
    """
    end = _floor_to_minute(now)

    if range_name == AnalyticsRange.SHIFT.value:
        if shift_date is not None and shift_number is not None:
            window = shift_resolver.window_for(int(shift_number), shift_date)
            return range_name, window.start, window.end, window.shift_id
        window = shift_resolver.resolve(now)
        return range_name, window.start, end, window.shift_id

    if range_name == AnalyticsRange.YESTERDAY.value:
        return range_name, shift_resolver.day_start(now, days_back=1), shift_resolver.day_start(now), None

    if range_name in (AnalyticsRange.LAST7.value, AnalyticsRange.WEEK.value):
        return AnalyticsRange.LAST7.value, end - timedelta(days=7), end, None

    if range_name == AnalyticsRange.MONTH.value:
        return range_name, shift_resolver.month_start(now), end, None

    return AnalyticsRange.TODAY.value, shift_resolver.day_start(now), end, None


def merge_historical_metrics(
    machine: Dict[str, Any],
    historical_oee: Optional[Dict[str, Any]],
    historical_quality: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """Prefer OEE history averaged over the window to the machine's live values."""
    if not historical_oee and not historical_quality:
        return machine

    merged = dict(machine)
    if historical_oee:
        for key in ("availability", "performance", "quality", "oee"):
            if historical_oee.get(key) is not None:
                merged[key] = _number(historical_oee[key])
        if historical_oee.get("actual_speed") is not None:
            merged["line_speed"] = _number(historical_oee["actual_speed"])
        if historical_oee.get("target_speed") is not None:
            merged["target_speed"] = _number(historical_oee["target_speed"])
    if historical_quality:
        ok_length = _number(historical_quality.get("produced_length_ok"))
        ng_length = _number(historical_quality.get("produced_length_ng"))
        merged["produced_length_ok"] = ok_length
        merged["produced_length_ng"] = ng_length
        merged["produced_length"] = ok_length + ng_length
    return merged


def build_loss_profile(
    machine: Dict[str, Any],
    history: List[Dict[str, Any]],
    alarm_count: int,
    window_start: datetime,
    window_end: datetime,
    now: datetime,
    weights: Optional[LossAllocationWeights] = None,
    thresholds: Optional[RootCauseThresholds] = None,
) -> Dict[str, Any]:
    """
    Split one machine's OEE gap into losses.

    ``availability_loss + performance_loss + quality_loss`` equals the gap
    ``100 - OEE`` after scaling; the scaled losses are then divided over the
    six categories. Availability loss follows the observed downtime mix
    (error/stopped, setup, idle/warning) and falls back to the configured
    default weights when the machine had no downtime in the window.
    """
    weights = weights or settings.LOSS_WEIGHTS
    thresholds = thresholds or settings.ROOT_CAUSE_THRESHOLDS

    availability = _clamp(_number(machine.get("availability")), 0, 100)
    performance = _clamp(_number(machine.get("performance")), 0, 100)
    quality = _clamp(_number(machine.get("quality")), 0, 100)
    oee = _clamp(_number(machine.get("oee")), 0, 100)

    availability_loss = _clamp(100 - availability, 0, 100)
    performance_loss = _clamp(availability - availability * performance / 100, 0, 100)
    quality_loss = _clamp(availability * performance / 100 - oee, 0, 100)
    total_gap = _clamp(100 - oee, 0, 100)
    theoretical_sum = availability_loss + performance_loss + quality_loss
    scale = total_gap / theoretical_sum if theoretical_sum > 0 else 0.0

    durations: Dict[str, float] = {}
    downtime_seconds = 0.0
    short_stops = 0
    long_stops = 0
    interval_cap = min(now, window_end)
    for entry in history:
        status = (entry.get("status") or MachineStatus.IDLE.value).lower()
        if status == MachineStatus.RUNNING.value:
            continue

        entry_end = entry.get("status_end_time") or interval_cap
        stop_seconds = max(0.0, (entry_end - entry["status_start_time"]).total_seconds())
        clipped = clip_interval(entry, window_start, window_end, now)
        seconds = (clipped[1] - clipped[0]).total_seconds() if clipped else 0.0

        durations[status] = durations.get(status, 0.0) + seconds
        downtime_seconds += seconds
        if stop_seconds <= thresholds.short_stop_seconds:
            short_stops += 1
        if stop_seconds >= thresholds.long_stop_seconds and status in (
            MachineStatus.ERROR.value, MachineStatus.STOPPED.value
        ):
            long_stops += 1

    failure_weight = durations.get("error", 0.0) + durations.get("stopped", 0.0)
    setup_weight = durations.get("setup", 0.0)
    idling_weight = durations.get("idle", 0.0) + durations.get("warning", 0.0)
    weight_sum = failure_weight + setup_weight + idling_weight
    if weight_sum > 0:
        failure_share = failure_weight / weight_sum
        setup_share = setup_weight / weight_sum
        idling_share = idling_weight / weight_sum
    else:
        failure_share = weights.equipment_failure
        setup_share = weights.setup
        idling_share = weights.idling

    produced_ok = _number(machine.get("produced_length_ok"))
    produced_ng = _number(machine.get("produced_length_ng"))
    total_produced = produced_ok + produced_ng
    if total_produced <= 0:
        total_produced = _number(machine.get("produced_length"))
    ng_rate = produced_ng / total_produced * 100 if total_produced > 0 else 0.0
    defects_share = _clamp(ng_rate / weights.defects_ng_rate_divisor, weights.defects_min, weights.defects_max)

    scaled_availability = availability_loss * scale
    scaled_quality = quality_loss * scale
    category_losses = {
        "Equipment Failure": round(scaled_availability * failure_share, 2),
        "Setup & Adjustments": round(scaled_availability * setup_share, 2),
        "Idling & Minor Stops": round(scaled_availability * idling_share, 2),
        "Reduced Speed": round(performance_loss * scale, 2),
        "Process Defects": round(scaled_quality * defects_share, 2),
        "Reduced Yield": round(scaled_quality * (1 - defects_share), 2),
    }

    target_speed = _number(machine.get("target_speed"))
    line_speed = _number(machine.get("line_speed"))
    speed_gap_pct = max(0.0, (target_speed - line_speed) / target_speed) * 100 if target_speed > 0 else 0.0

    return {
        "machine_id": machine["id"],
        "machine_name": machine.get("name") or machine["id"],
        "area": machine.get("area"),
        "oee": oee,
        "availability": availability,
        "performance": performance,
        "quality": quality,
        "total_gap": total_gap,
        "availability_loss": availability_loss * scale,
        "performance_loss": performance_loss * scale,
        "quality_loss": quality_loss * scale,
        "downtime_seconds": downtime_seconds,
        "short_stops": short_stops,
        "long_stops": long_stops,
        "alarm_count": alarm_count,
        "speed_gap_pct": round(speed_gap_pct, 1),
        "ng_rate": round(ng_rate, 1),
        "category_losses": category_losses,
    }


def rescale_category_totals(profiles: List[Dict[str, Any]], total_gap: float) -> List[Dict[str, Any]]:
    """
    Fleet category totals scaled so they sum to ``total_gap``.

    Each total is rounded to two decimals and the rounding residual is added
    to the largest category, so the rounded values add up exactly.
    """
    totals = {category: 0.0 for category in LOSS_CATEGORIES}
    for profile in profiles:
        for category, loss in profile["category_losses"].items():
            totals[category] += loss

    category_sum = sum(totals.values())
    if category_sum <= 0:
        return [{"category": category, "loss": 0.0} for category in LOSS_CATEGORIES]

    scaled = {category: round(loss / category_sum * total_gap, 2) for category, loss in totals.items()}
    residual = round(round(total_gap, 2) - sum(scaled.values()), 2)
    if residual:
        largest = max(LOSS_CATEGORIES, key=lambda category: (scaled[category], -LOSS_CATEGORIES.index(category)))
        scaled[largest] = round(scaled[largest] + residual, 2)

    return [{"category": category, "loss": scaled[category]} for category in LOSS_CATEGORIES]


def build_six_big_losses(category_totals: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    losses = [
        {"category": entry["category"], "loss": entry["loss"], "type": CATEGORY_TYPES[entry["category"]]}
        for entry in category_totals
        if entry["loss"] > 0
    ]
    return sorted(losses, key=lambda entry: (-entry["loss"], LOSS_CATEGORIES.index(entry["category"])))


def build_pareto_series(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Items sorted by value (descending) with a running cumulative percentage."""
    ordered = sorted(items, key=lambda item: (-item["value"], str(item["label"])))
    total = sum(item["value"] for item in ordered) or 1
    cumulative = 0.0
    series = []
    for item in ordered:
        cumulative += item["value"]
        series.append({
            "label": item["label"],
            "value": round(item["value"], 2),
            "cumulative": round(cumulative / total * 100, 1),
        })
    return series


def build_loss_ranking(
    profiles: List[Dict[str, Any]], weights: Optional[LossAllocationWeights] = None
) -> List[Dict[str, Any]]:
    """
    Machine/category losses ranked by severity.

    Severity blends impact, downtime duration and stop frequency, each
    normalized by the largest value in the batch (never below 1), scaled to
    0..100. Items without impact are dropped.
    """
    weights = weights or settings.LOSS_WEIGHTS
    items = [
        {
            "category": category,
            "machine_id": profile["machine_id"],
            "machine_name": profile["machine_name"],
            "area": profile["area"],
            "impact": loss,
            "duration": profile["downtime_seconds"],
            "frequency": profile["short_stops"] + profile["long_stops"],
        }
        for profile in profiles
        for category, loss in profile["category_losses"].items()
    ]
    if not items:
        return []

    max_impact = max([1.0] + [item["impact"] for item in items])
    max_duration = max([1.0] + [item["duration"] for item in items])
    max_frequency = max([1] + [item["frequency"] for item in items])

    ranked = []
    for item in items:
        if item["impact"] <= 0:
            continue
        score = (
            weights.severity_impact * item["impact"] / max_impact
            + weights.severity_duration * item["duration"] / max_duration
            + weights.severity_frequency * item["frequency"] / max_frequency
        )
        ranked.append({**item, "severity": round(score * 100)})

    return sorted(
        ranked,
        key=lambda item: (-item["severity"], -item["impact"], item["machine_id"],
                          LOSS_CATEGORIES.index(item["category"]))
    )


def build_root_causes(
    profiles: List[Dict[str, Any]], thresholds: Optional[RootCauseThresholds] = None
) -> List[Dict[str, Any]]:
    """Rule-based evidence; several rules may fire for one machine."""
    thresholds = thresholds or settings.ROOT_CAUSE_THRESHOLDS
    causes = []
    for profile in profiles:
        base = {"machine_id": profile["machine_id"], "machine_name": profile["machine_name"]}
        if profile["short_stops"] >= thresholds.min_short_stops:
            causes.append({**base, "category": "Idling & Minor Stops",
                           "evidence": f"{profile['short_stops']} short stops detected"})
        if profile["long_stops"] >= thresholds.min_long_stops and profile["alarm_count"] > 0:
            causes.append({**base, "category": "Equipment Failure",
                           "evidence": f"{profile['long_stops']} long stops with alarms active"})
        if profile["speed_gap_pct"] >= thresholds.speed_gap_pct:
            causes.append({**base, "category": "Reduced Speed",
                           "evidence": f"Speed {profile['speed_gap_pct']:.1f}% below target"})
        if profile["ng_rate"] >= thresholds.ng_rate_pct:
            causes.append({**base, "category": "Process Defects",
                           "evidence": f"NG rate {profile['ng_rate']:.1f}%"})
    return causes


def downtime_by_status(
    history: List[Dict[str, Any]], start: datetime, end: datetime, now: datetime
) -> List[Dict[str, Any]]:
    """Downtime minutes per non-running status and the number of machines affected."""
    buckets: Dict[str, Dict[str, Any]] = {}
    for entry in history:
        status = (entry.get("status") or MachineStatus.IDLE.value).lower()
        if status == MachineStatus.RUNNING.value:
            continue
        clipped = clip_interval(entry, start, end, now)
        if clipped is None:
            continue
        bucket = buckets.setdefault(status, {"seconds": 0.0, "machines": set()})
        bucket["seconds"] += (clipped[1] - clipped[0]).total_seconds()
        bucket["machines"].add(entry["machine_id"])

    rows = [
        {
            "reason": status.capitalize(),
            "duration": round(bucket["seconds"] / 60, 1),
            "count": len(bucket["machines"]),
        }
        for status, bucket in buckets.items()
    ]
    return sorted(rows, key=lambda row: (-row["duration"], row["reason"]))


def downtime_seconds_by_shift(
    history: List[Dict[str, Any]],
    start: datetime,
    end: datetime,
    now: datetime,
    shift_resolver: ShiftResolver,
) -> Dict[int, Dict[str, Any]]:
    buckets = {number: {"seconds": 0.0, "machines": set()} for number in SHIFT_LABELS}
    for entry in history:
        status = (entry.get("status") or MachineStatus.IDLE.value).lower()
        if status == MachineStatus.RUNNING.value:
            continue
        clipped = clip_interval(entry, start, end, now)
        if clipped is None:
            continue
        for window, segment_start, segment_end in shift_resolver.split_by_shift(*clipped):
            bucket = buckets[window.shift_number]
            bucket["seconds"] += (segment_end - segment_start).total_seconds()
            bucket["machines"].add(entry["machine_id"])
    return buckets


def downtime_by_shift(buckets: Dict[int, Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "label": SHIFT_LABELS[number],
            "duration": round(bucket["seconds"] / 60, 1),
            "count": len(bucket["machines"]),
        }
        for number, bucket in sorted(buckets.items())
    ]


def loss_by_order(profiles: List[Dict[str, Any]], orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """OEE gap attributed to each machine's running order, else any order it has."""
    by_order: Dict[str, Dict[str, Any]] = {}
    for profile in profiles:
        machine_orders = [order for order in orders if order.get("machine_id") == profile["machine_id"]]
        running = [order for order in machine_orders if order.get("status") == "running"]
        order = (running or machine_orders or [None])[0]
        if order is None:
            continue
        entry = by_order.setdefault(order["id"], {"label": order.get("name") or order["id"], "value": 0.0})
        entry["value"] += profile["total_gap"]
    return sorted(by_order.values(), key=lambda item: (-item["value"], str(item["label"])))


def build_insight_summary(
    six_big_losses: List[Dict[str, Any]],
    profiles: List[Dict[str, Any]],
    pareto_by_shift: List[Dict[str, Any]],
) -> str:
    if not six_big_losses:
        return NO_LOSS_SUMMARY

    top_loss = six_big_losses[0]
    parts = [
        f"{top_loss['category']} is the main contributor to the current OEE loss ({top_loss['loss']:.1f}%)."
    ]
    if profiles:
        top_machine = max(profiles, key=lambda profile: profile["total_gap"])
        parts.append(f"Largest impact is from {top_machine['machine_name']}.")
    if pareto_by_shift and pareto_by_shift[0]["value"] > 0:
        parts.append(f"Losses are concentrated in {pareto_by_shift[0]['label']}.")
    return " ".join(parts)


def _average(profiles: List[Dict[str, Any]], key: str) -> float:
    if not profiles:
        return 0.0
    return sum(profile[key] for profile in profiles) / len(profiles)


def _index_by_machine(rows: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    return {row["machine_id"]: row for row in rows}


def _group_by_machine(rows: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row["machine_id"], []).append(row)
    return grouped


def _isoformat(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


class AnalyticsEngine:
    """Computes the loss-analysis payload for an analytics scope."""

    def __init__(
        self,
        store,
        shift_resolver: ShiftResolver,
        clock,
        weights: Optional[LossAllocationWeights] = None,
        thresholds: Optional[RootCauseThresholds] = None,
    ):
        self.store = store
        self.shift_resolver = shift_resolver
        self.clock = clock
        self.weights = weights or settings.LOSS_WEIGHTS
        self.thresholds = thresholds or settings.ROOT_CAUSE_THRESHOLDS

    def resolve_scope(
        self,
        range_name: str = AnalyticsRange.TODAY.value,
        area: str = "all",
        machine_id: Optional[str] = None,
        shift_date: Optional[date] = None,
        shift_number: Optional[int] = None,
    ) -> AnalyticsScope:
        resolved_range, start, end, shift_id = resolve_range_window(
            range_name, self.clock.now(), self.shift_resolver, shift_date, shift_number
        )
        return AnalyticsScope(
            range=resolved_range,
            start=start,
            end=end,
            shift_id=shift_id,
            area=area or "all",
            machine_id=machine_id,
        )

    async def compute_analytics(
        self,
        range_name: str = AnalyticsRange.TODAY.value,
        area: str = "all",
        machine_id: Optional[str] = None,
        shift_date: Optional[date] = None,
        shift_number: Optional[int] = None,
    ) -> Dict[str, Any]:
        scope = self.resolve_scope(range_name, area, machine_id, shift_date, shift_number)
        return await self.compute_for_scope(scope)

    async def _load_datasets(
        self, machine_ids: List[str], start: datetime, end: datetime
    ) -> Dict[str, Any]:
        """Run the per-scope queries concurrently; a failed query yields its empty default."""
        requests = {
            "status_history": (self.store.fetch_status_history(machine_ids, start, end), []),
            "alarms": (self.store.alarms_since(machine_ids, start), []),
            "orders": (self.store.orders_for(machine_ids), []),
            "historical_oee": (self.store.historical_oee_averages(machine_ids, start, end), []),
            "historical_quality": (self.store.historical_quality(machine_ids, start, end), []),
            "oee_trend": (self.store.oee_trend_buckets(machine_ids, start, end), []),
            "output": (self.store.output_totals(machine_ids, start, end), {"ok": 0.0, "ng": 0.0}),
            "ng_trend": (self.store.ng_trend(machine_ids, start, end), []),
            "planned_vs_actual": (self.store.planned_vs_actual(machine_ids, start, end),
                                  {"planned": 0.0, "actual": 0.0}),
        }

        outcomes = await asyncio.gather(
            *(coroutine for coroutine, _ in requests.values()),
            return_exceptions=True
        )

        datasets = {}
        for (name, (_, default)), outcome in zip(requests.items(), outcomes):
            if isinstance(outcome, Exception):
                logger.error("Failed to load analytics dataset", dataset=name, error=str(outcome))
                datasets[name] = default
            else:
                datasets[name] = outcome
        return datasets

    async def _output_summary(
        self, output: Dict[str, float], machine_ids: List[str], start: datetime, end: datetime
    ) -> Dict[str, float]:
        total_ok = output["ok"]
        total_ng = output["ng"]
        total_length = total_ok + total_ng
        ng_rate = total_ng / total_length * 100 if total_length > 0 else 0.0

        if total_length <= 0 and machine_ids:
            try:
                total_length = await self.store.length_event_total(machine_ids, start, end)
                total_ok = total_length
            except Exception as e:
                logger.error("Failed to load production length total", error=str(e))

        return {
            "total_ok": round(total_ok, 2),
            "total_ng": round(total_ng, 2),
            "total_length": round(total_length, 2),
            "ng_rate": round(ng_rate, 2),
        }

    async def compute_for_scope(self, scope: AnalyticsScope) -> Dict[str, Any]:
        """Compute the full analytics payload for an already resolved scope."""
        now = self.clock.now()
        start, end = scope.start, scope.end

        try:
            machines = await self.store.list_machines(area=scope.area)
        except Exception as e:
            logger.error("Failed to load machines for analytics", error=str(e), area=scope.area)
            raise AnalyticsError("Failed to load machines", {"area": scope.area})

        if scope.machine_id:
            machines = [machine for machine in machines if machine["id"] == scope.machine_id]
        machine_ids = [machine["id"] for machine in machines]

        datasets = await self._load_datasets(machine_ids, start, end)
        status_history = datasets["status_history"]
        history_by_machine = _group_by_machine(status_history)
        alarms_by_machine = _group_by_machine(datasets["alarms"])
        oee_by_machine = _index_by_machine(datasets["historical_oee"])
        quality_by_machine = _index_by_machine(datasets["historical_quality"])

        profiles = [
            build_loss_profile(
                merge_historical_metrics(machine, oee_by_machine.get(machine["id"]),
                                         quality_by_machine.get(machine["id"])),
                history_by_machine.get(machine["id"], []),
                len(alarms_by_machine.get(machine["id"], [])),
                start, end, now, self.weights, self.thresholds
            )
            for machine in machines
        ]

        avg_oee = _average(profiles, "oee")
        total_gap = _clamp(100 - avg_oee, 0, 100) if profiles else 0.0

        six_big_losses = build_six_big_losses(rescale_category_totals(profiles, total_gap))

        area_totals: Dict[str, float] = {}
        for profile in profiles:
            area_key = profile["area"] or "unassigned"
            area_totals[area_key] = area_totals.get(area_key, 0.0) + profile["total_gap"]

        shift_buckets = downtime_seconds_by_shift(status_history, start, end, now, self.shift_resolver)
        shift_seconds = sum(bucket["seconds"] for bucket in shift_buckets.values())
        pareto_by_shift = build_pareto_series([
            {
                "label": SHIFT_LABELS[number],
                "value": bucket["seconds"] / shift_seconds * total_gap if shift_seconds > 0 else 0.0,
            }
            for number, bucket in shift_buckets.items()
        ])

        by_machine = [{"label": profile["machine_name"], "value": profile["total_gap"]} for profile in profiles]

        payload = {
            "scope": {
                "range": scope.range,
                "start": start.isoformat(),
                "end": end.isoformat(),
                "shift_id": scope.shift_id,
                "area": scope.area,
                "machine_id": scope.machine_id,
            },
            "oee_summary": {
                "oee": round(avg_oee, 1),
                "availability": round(_average(profiles, "availability"), 1),
                "performance": round(_average(profiles, "performance"), 1),
                "quality": round(_average(profiles, "quality"), 1),
                "total_gap": round(total_gap, 1),
            },
            "six_big_losses": six_big_losses,
            "pareto": {
                "by_category": build_pareto_series(
                    [{"label": loss["category"], "value": loss["loss"]} for loss in six_big_losses]
                ),
                "by_machine": build_pareto_series(by_machine),
                "by_area": build_pareto_series(
                    [{"label": label, "value": value} for label, value in area_totals.items()]
                ),
                "by_shift": pareto_by_shift,
            },
            "loss_ranking": build_loss_ranking(profiles, self.weights),
            "root_cause_contributors": build_root_causes(profiles, self.thresholds),
            "breakdowns": {
                "by_machine": sorted(by_machine, key=lambda item: (-item["value"], str(item["label"]))),
                "by_shift": [{"label": item["label"], "value": item["value"]} for item in pareto_by_shift],
                "by_order": loss_by_order(profiles, datasets["orders"]),
            },
            "loss_trend": [],
            "anomalies": [],
            "insights": {
                "summary": build_insight_summary(six_big_losses, profiles, pareto_by_shift),
            },
            "oee_trend": [
                {
                    "time": _isoformat(row["bucket"]),
                    "availability": round(_number(row.get("availability")), 2),
                    "performance": round(_number(row.get("performance")), 2),
                    "quality": round(_number(row.get("quality")), 2),
                    "oee": round(_number(row.get("oee")), 2),
                }
                for row in datasets["oee_trend"]
            ],
            "downtime_by_status": downtime_by_status(status_history, start, end, now),
            "downtime_by_shift": downtime_by_shift(shift_buckets),
            "output_summary": await self._output_summary(datasets["output"], machine_ids, start, end),
            "ng_trend": [self._ng_point(row) for row in datasets["ng_trend"]],
            "planned_vs_actual": self._planned_vs_actual(datasets["planned_vs_actual"]),
        }

        logger.info(
            "Analytics computed",
            range=scope.range,
            area=scope.area,
            machine_id=scope.machine_id,
            machines=len(machines),
            total_gap=payload["oee_summary"]["total_gap"]
        )
        return payload

    @staticmethod
    def _ng_point(row: Dict[str, Any]) -> Dict[str, Any]:
        total_ok = _number(row.get("total_ok"))
        total_ng = _number(row.get("total_ng"))
        total = total_ok + total_ng
        return {
            "time": _isoformat(row["bucket"]),
            "ng_rate": round(total_ng / total * 100, 2) if total > 0 else 0.0,
            "ng_length": round(total_ng, 2),
        }

    @staticmethod
    def _planned_vs_actual(row: Dict[str, float]) -> Dict[str, float]:
        planned = _number(row.get("planned"))
        actual = _number(row.get("actual"))
        variance = (actual - planned) / planned * 100 if planned > 0 else 0.0
        return {
            "planned": round(planned, 2),
            "actual": round(actual, 2),
            "variance": round(variance, 2),
        }
