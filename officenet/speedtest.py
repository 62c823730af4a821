import json
import logging
import shlex
import subprocess

from .errors import MeasurementError
from .settings_defaults import SPEEDTEST_DEFAULTS

logger = logging.getLogger(__name__)


def _source_for(cfg, isp_label):
    sources = cfg.get("sources") or {}
    if not isp_label or not isinstance(sources, dict):
        return ""
    value = sources.get(isp_label)
    if value is None:
        lowered = isp_label.strip().lower()
        value = next((v for k, v in sources.items() if str(k).strip().lower() == lowered), None)
    return str(value).strip() if value else ""


def format_speedtest_command(cfg, source_ip=None):
    cmd = [cfg.get("command") or "speedtest"]
    args = cfg.get("args") or ""
    if args:
        cmd.extend(shlex.split(args))
    if source_ip and "--source" not in args and "--interface" not in args:
        cmd.extend(["--source", source_ip])
    return cmd


def _bandwidth_mbps(value):
    if isinstance(value, dict):
        bandwidth = value.get("bandwidth")
        if bandwidth is None:
            return None
        return round(bandwidth * 8 / 1_000_000, 2)
    if isinstance(value, (int, float)):
        return round(float(value) / 1_000_000, 2)
    return None


def parse_speedtest_json(raw_output):
    try:
        data = json.loads(raw_output)
    except ValueError as exc:
        raise MeasurementError("Speedtest returned invalid JSON.") from exc
    if not isinstance(data, dict):
        raise MeasurementError("Speedtest JSON is not an object.")

    ping = data.get("ping")
    latency_ms = None
    jitter_ms = None
    if isinstance(ping, dict):
        latency_ms = ping.get("latency")
        jitter_ms = ping.get("jitter")
    elif isinstance(ping, (int, float)):
        latency_ms = float(ping)

    server = data.get("server") or {}
    server_id = None
    server_name = None
    if isinstance(server, dict):
        server_id = server.get("id")
        server_name = server.get("name")

    return {
        "download": _bandwidth_mbps(data.get("download")),
        "upload": _bandwidth_mbps(data.get("upload")),
        "ping": latency_ms,
        "jitter": jitter_ms,
        "packet_loss": data.get("packetLoss"),
        "server_id": None if server_id is None else str(server_id),
        "server_name": server_name,
        "isp_name": data.get("isp"),
    }


def run_measurement(isp_label=None, cfg=None):
    """Run one speed test, bound to the ISP's configured source address if any."""
    cfg = cfg or SPEEDTEST_DEFAULTS
    cmd = format_speedtest_command(cfg, _source_for(cfg, isp_label))
    timeout = int(cfg.get("timeout_seconds") or 0) or None
    logger.info("Running speed test for %s: %s", isp_label or "default route", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise MeasurementError(f"Speedtest could not run: {exc}") from exc
    if result.returncode != 0:
        raise MeasurementError(result.stdout or "Speedtest failed.")
    raw_output = (result.stdout or "").strip()
    if not raw_output:
        raise MeasurementError("Speedtest returned empty output.")
    parsed = parse_speedtest_json(raw_output)
    if parsed["download"] is None or parsed["upload"] is None:
        raise MeasurementError("Speedtest JSON missing bandwidth fields.")
    parsed["raw_data"] = raw_output if cfg.get("store_raw_output") else None
    return parsed
