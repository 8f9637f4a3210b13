import asyncio
import logging
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import Field

from whoop_auth import (
    ApiRequestFailedError,
    CredentialsUnavailableError,
    MissingClientCredentialsError,
    RefreshUnavailableError,
    TokenManager,
    TokenRefreshFailedError,
    WhoopConnectionError,
    WhoopError,
)
from whoop_client import WhoopClient
from whoop_config import Settings, configure_logging

logger = logging.getLogger(__name__)

# One credential owner per process, shared by every tool call
settings = Settings.from_env()
token_manager = TokenManager.from_settings(settings)
whoop = WhoopClient(token_manager, api_base=settings.api_base)

# Initialize FastMCP server
mcp = FastMCP("whoop")

Limit = Annotated[int, Field(ge=1, le=25, description="Number of records to fetch (1-25)")]
StartDate = Annotated[
    Optional[str],
    Field(description="Start date filter (ISO 8601 format, e.g., 2024-01-01T00:00:00Z)"),
]
EndDate = Annotated[Optional[str], Field(description="End date filter (ISO 8601 format)")]


# Error reporting
def describe_error(error: Exception) -> str:
    """Turn a WHOOP error into a message that says what the user has to do about it."""
    if isinstance(error, CredentialsUnavailableError):
        return f"{error} Run get_tokens.py to complete the initial WHOOP authorization."
    if isinstance(error, MissingClientCredentialsError):
        return (
            f"Configuration problem: {error}. Set WHOOP_CLIENT_ID and WHOOP_CLIENT_SECRET "
            "in the MCP server environment."
        )
    if isinstance(error, (RefreshUnavailableError, TokenRefreshFailedError)):
        return (
            f"Re-authentication needed: {error}. Your WHOOP authorization has expired or was "
            "revoked; run get_tokens.py again."
        )
    if isinstance(error, (ApiRequestFailedError, WhoopConnectionError)):
        return f"WHOOP API problem: {error}. This is usually temporary, please try again shortly."
    return str(error)


async def fetch(endpoint: str, what: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Call the WHOOP API, converting failures into MCP tool errors."""
    try:
        return await whoop.request(endpoint, params)
    except WhoopError as e:
        logger.warning(f"Error fetching {what}: {e}")
        raise ToolError(f"Error fetching {what}: {describe_error(e)}") from e


def build_query(limit: int, start: Optional[str] = None, end: Optional[str] = None) -> Dict[str, str]:
    query = {"limit": str(limit)}
    if start:
        query["start"] = start
    if end:
        query["end"] = end
    return query


# Formatting helpers
def format_duration(milliseconds: float) -> str:
    """Format a duration in milliseconds as '7h 32m'."""
    milliseconds = int(milliseconds or 0)
    hours = milliseconds // 3600000
    minutes = (milliseconds % 3600000) // 60000
    return f"{hours}h {minutes}m"


def format_date(date_str: Optional[str]) -> str:
    """Format an ISO timestamp in the configured timezone, e.g. 'Mon, 15 Jan 2024, 07:30'."""
    if not date_str:
        return "Unknown Date"
    try:
        dt = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return date_str
    if dt.tzinfo is not None:
        dt = dt.astimezone(settings.tzinfo)
    return dt.strftime("%a, %d %b %Y, %H:%M")


def kilojoules_to_calories(kilojoules: float) -> int:
    return round((kilojoules or 0) / 4.184)


def get_recovery_zone(score: float) -> str:
    if score >= 67:
        return "🟢 Green (Optimal)"
    if score >= 34:
        return "🟡 Yellow (Moderate)"
    return "🔴 Red (Low)"


def total_sleep_milli(stages: Dict[str, Any]) -> int:
    return (
        (stages.get("total_light_sleep_time_milli") or 0)
        + (stages.get("total_slow_wave_sleep_time_milli") or 0)
        + (stages.get("total_rem_sleep_time_milli") or 0)
    )


def scored(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [r for r in records if r.get("score")]


def format_profile(data: Dict[str, Any]) -> str:
    name = " ".join(part for part in (data.get("first_name"), data.get("last_name")) if part)
    return (
        "👤 **Whoop Profile**\n\n"
        f"Name: {name or 'Unknown'}\n"
        f"Email: {data.get('email', 'Unknown')}\n"
        f"User ID: {data.get('user_id', 'Unknown')}"
    )


def format_body_measurements(data: Dict[str, Any]) -> str:
    height_m = data.get("height_meter") or 0
    weight_kg = data.get("weight_kilogram") or 0

    height_cm = round(height_m * 100)
    height_feet = int(height_cm // 30.48)
    height_inches = round((height_cm % 30.48) / 2.54)
    if height_inches == 12:
        height_feet += 1
        height_inches = 0
    weight_lbs = round(weight_kg * 2.205)

    return (
        "📏 **Body Measurements**\n\n"
        f"Height: {height_cm}cm ({height_feet}'{height_inches}\")\n"
        f"Weight: {weight_kg}kg ({weight_lbs}lbs)\n"
        f"Max Heart Rate: {data.get('max_heart_rate', 'N/A')} bpm"
    )


def format_recovery_records(records: List[Dict[str, Any]]) -> str:
    entries = []
    for record in scored(records):
        score = record["score"]
        recovery_score = score.get("recovery_score") or 0
        lines = [
            f"📊 **{format_date(record.get('created_at'))}**",
            f"   Recovery: {recovery_score}% {get_recovery_zone(recovery_score)}",
            f"   HRV: {(score.get('hrv_rmssd_milli') or 0):.1f}ms",
            f"   Resting HR: {score.get('resting_heart_rate', 'N/A')} bpm",
        ]
        if score.get("spo2_percentage"):
            lines.append(f"   SpO2: {score['spo2_percentage']:.1f}%")
        if score.get("skin_temp_celsius"):
            lines.append(f"   Skin Temp: {score['skin_temp_celsius']:.1f}°C")
        entries.append("\n".join(lines))
    return "\n\n".join(entries)


def format_sleep_records(records: List[Dict[str, Any]]) -> str:
    entries = []
    for record in scored(records):
        if record.get("nap"):
            continue
        score = record["score"]
        stages = score.get("stage_summary") or {}
        entries.append(
            f"🌙 **{format_date(record.get('start'))}**\n"
            f"   Total Sleep: {format_duration(total_sleep_milli(stages))}\n"
            f"   Performance: {score.get('sleep_performance_percentage', 'N/A')}%\n"
            f"   Efficiency: {(score.get('sleep_efficiency_percentage') or 0):.1f}%\n"
            f"   Consistency: {score.get('sleep_consistency_percentage', 'N/A')}%\n"
            "\n"
            "   Sleep Stages:\n"
            f"   • Light: {format_duration(stages.get('total_light_sleep_time_milli'))}\n"
            f"   • Deep (SWS): {format_duration(stages.get('total_slow_wave_sleep_time_milli'))}\n"
            f"   • REM: {format_duration(stages.get('total_rem_sleep_time_milli'))}\n"
            f"   • Awake: {format_duration(stages.get('total_awake_time_milli'))}\n"
            "\n"
            f"   Respiratory Rate: {(score.get('respiratory_rate') or 0):.1f} breaths/min\n"
            f"   Disturbances: {stages.get('disturbance_count', 0)}"
        )
    return "\n\n".join(entries)


def format_workout_records(records: List[Dict[str, Any]]) -> str:
    entries = []
    for record in scored(records):
        score = record["score"]
        lines = [
            f"🏋️ **{record.get('sport_name') or 'Activity'} - {format_date(record.get('start'))}**",
            f"   Strain: {(score.get('strain') or 0):.1f}/21",
            f"   Calories: {kilojoules_to_calories(score.get('kilojoule'))} kcal",
            f"   Avg HR: {score.get('average_heart_rate', 'N/A')} bpm | Max HR: {score.get('max_heart_rate', 'N/A')} bpm",
        ]
        if score.get("distance_meter"):
            lines.append(f"   Distance: {score['distance_meter'] / 1000:.2f} km")
        if score.get("altitude_gain_meter"):
            lines.append(f"   Elevation Gain: {score['altitude_gain_meter']:.0f}m")
        entries.append("\n".join(lines))
    return "\n\n".join(entries)


def format_cycle_records(records: List[Dict[str, Any]]) -> str:
    entries = []
    for record in scored(records):
        score = record["score"]
        entries.append(
            f"📅 **{format_date(record.get('start'))}**\n"
            f"   Day Strain: {(score.get('strain') or 0):.1f}/21\n"
            f"   Calories: {kilojoules_to_calories(score.get('kilojoule'))} kcal\n"
            f"   Avg HR: {score.get('average_heart_rate', 'N/A')} bpm | Max HR: {score.get('max_heart_rate', 'N/A')} bpm"
        )
    return "\n\n".join(entries)


def format_health_overview(
    recovery_data: Dict[str, Any], sleep_data: Dict[str, Any], cycle_data: Dict[str, Any]
) -> str:
    output = "# 🏥 Health Overview\n\n"

    recoveries = recovery_data.get("records") or []
    latest_recovery = recoveries[0].get("score") if recoveries else None
    if latest_recovery:
        recovery_score = latest_recovery.get("recovery_score") or 0
        output += "## 💚 Recovery Status\n"
        output += f"**Score: {recovery_score}%** {get_recovery_zone(recovery_score)}\n\n"
        output += f"- HRV: {(latest_recovery.get('hrv_rmssd_milli') or 0):.1f} ms\n"
        output += f"- Resting HR: {latest_recovery.get('resting_heart_rate', 'N/A')} bpm\n"
        if latest_recovery.get("spo2_percentage"):
            output += f"- SpO2: {latest_recovery['spo2_percentage']:.1f}%\n"
        if latest_recovery.get("skin_temp_celsius"):
            output += f"- Skin Temp: {latest_recovery['skin_temp_celsius']:.1f}°C\n"
        output += "\n"

    latest_sleep = next((s for s in sleep_data.get("records") or [] if not s.get("nap")), None)
    if latest_sleep and latest_sleep.get("score"):
        sleep_score = latest_sleep["score"]
        stages = sleep_score.get("stage_summary") or {}
        output += "## 😴 Last Night's Sleep\n"
        output += (
            f"**Total: {format_duration(total_sleep_milli(stages))}** | "
            f"Performance: {sleep_score.get('sleep_performance_percentage', 'N/A')}%\n\n"
        )
        output += f"- Deep Sleep: {format_duration(stages.get('total_slow_wave_sleep_time_milli'))}\n"
        output += f"- REM: {format_duration(stages.get('total_rem_sleep_time_milli'))}\n"
        output += f"- Efficiency: {(sleep_score.get('sleep_efficiency_percentage') or 0):.1f}%\n"
        output += "\n"

    cycles = cycle_data.get("records") or []
    latest_cycle = cycles[0].get("score") if cycles else None
    if latest_cycle:
        output += "## ⚡ Current Day Strain\n"
        output += (
            f"**Strain: {(latest_cycle.get('strain') or 0):.1f}/21** | "
            f"Calories: {kilojoules_to_calories(latest_cycle.get('kilojoule'))} kcal\n\n"
        )

    if latest_recovery:
        recovery_score = latest_recovery.get("recovery_score") or 0
        output += "## 💡 Recommendations\n"
        if recovery_score >= 67:
            output += "Your body is well-recovered! Great day for:\n"
            output += "- High-intensity training\n"
            output += "- Challenging workouts\n"
            output += "- Building fitness\n"
        elif recovery_score >= 34:
            output += "Moderate recovery - consider:\n"
            output += "- Moderate intensity exercise\n"
            output += "- Active recovery activities\n"
            output += "- Being mindful of total strain\n"
        else:
            output += "Low recovery - prioritize:\n"
            output += "- Rest and recovery\n"
            output += "- Light movement only (walking, stretching)\n"
            output += "- Earlier bedtime tonight\n"
            output += "- Stress reduction\n"

    return output


# WHOOP API tools
@mcp.tool()
async def whoop_get_profile() -> str:
    """Retrieves basic profile information for the authenticated Whoop user.

    Returns the user ID, email address, first name and last name.
    Use this to identify the user and personalize responses.
    """
    data = await fetch("/v2/user/profile/basic", "profile")
    return format_profile(data)


@mcp.tool()
async def whoop_get_body_measurements() -> str:
    """Retrieves body measurements for the authenticated Whoop user.

    Returns height, weight and maximum heart rate, in metric and imperial units.
    Useful for calculating calories burned and personalizing workout recommendations.
    """
    data = await fetch("/v2/user/measurement/body", "body measurements")
    return format_body_measurements(data)


@mcp.tool()
async def whoop_get_recovery(limit: Limit = 7, start: StartDate = None, end: EndDate = None) -> str:
    """Retrieves recovery data from Whoop including recovery score, HRV, resting heart rate, and SpO2.

    Recovery score indicates how ready your body is for strain:
    - 67-100% (Green): Optimal recovery, ready for high strain
    - 34-66% (Yellow): Moderate recovery, be mindful of strain
    - 0-33% (Red): Low recovery, prioritize rest

    Args:
        limit: Number of records (1-25, default: 7)
        start: Filter recoveries after this date (ISO 8601)
        end: Filter recoveries before this date (ISO 8601)
    """
    data = await fetch("/v2/recovery", "recovery data", build_query(limit, start, end))
    records = data.get("records") or []
    if not records:
        return "No recovery data found for the specified period."
    return f"💚 **Recovery Data (Last {len(records)} records)**\n\n{format_recovery_records(records)}"


@mcp.tool()
async def whoop_get_sleep(limit: Limit = 7, start: StartDate = None, end: EndDate = None) -> str:
    """Retrieves detailed sleep data from Whoop including sleep stages, performance, and respiratory rate.

    Naps are left out. For each night: total sleep, light/deep (SWS)/REM/awake
    time, sleep performance, efficiency and consistency, respiratory rate and
    disturbances.

    Args:
        limit: Number of records (1-25, default: 7)
        start: Filter sleeps after this date (ISO 8601)
        end: Filter sleeps before this date (ISO 8601)
    """
    data = await fetch("/v2/activity/sleep", "sleep data", build_query(limit, start, end))
    records = data.get("records") or []
    if not records:
        return "No sleep data found for the specified period."
    nights = len([r for r in records if not r.get("nap")])
    return f"😴 **Sleep Data (Last {nights} nights)**\n\n{format_sleep_records(records)}"


@mcp.tool()
async def whoop_get_workouts(limit: Limit = 10, start: StartDate = None, end: EndDate = None) -> str:
    """Retrieves workout data from Whoop including strain, heart rate, calories, and distance.

    Strain is measured on a 0-21 scale:
    - 0-10: Light activity
    - 10-14: Moderate activity
    - 14-18: High strain (strenuous)
    - 18-21: All out (maximal effort)

    Args:
        limit: Number of records (1-25, default: 10)
        start: Filter workouts after this date (ISO 8601)
        end: Filter workouts before this date (ISO 8601)
    """
    data = await fetch("/v2/activity/workout", "workout data", build_query(limit, start, end))
    records = data.get("records") or []
    if not records:
        return "No workout data found for the specified period."
    return f"💪 **Workout Data (Last {len(records)} workouts)**\n\n{format_workout_records(records)}"


@mcp.tool()
async def whoop_get_cycles(limit: Limit = 7, start: StartDate = None, end: EndDate = None) -> str:
    """Retrieves physiological cycle (day) data from Whoop including daily strain, calories, and heart rate.

    A cycle represents a physiological day (wake to wake), not a calendar day.
    Day Strain is cumulative and measured on a 0-21 scale.

    Args:
        limit: Number of records (1-25, default: 7)
        start: Filter cycles after this date (ISO 8601)
        end: Filter cycles before this date (ISO 8601)
    """
    data = await fetch("/v2/cycle", "cycle data", build_query(limit, start, end))
    records = data.get("records") or []
    if not records:
        return "No cycle data found for the specified period."
    return f"⚡ **Daily Strain Data (Last {len(records)} days)**\n\n{format_cycle_records(records)}"


@mcp.tool()
async def whoop_get_health_overview() -> str:
    """Gets a comprehensive health overview combining your latest recovery, sleep, and strain data.

    This is the best tool to use when you want a quick summary of current health status:
    morning check-ins on readiness, deciding workout intensity, or a quick status update.
    Includes recommendations based on the latest recovery score.
    """
    recovery_data, sleep_data, cycle_data = await asyncio.gather(
        fetch("/v2/recovery", "health overview", {"limit": "1"}),
        fetch("/v2/activity/sleep", "health overview", {"limit": "3"}),
        fetch("/v2/cycle", "health overview", {"limit": "1"}),
    )
    return format_health_overview(recovery_data, sleep_data, cycle_data)


def main() -> None:
    configure_logging(settings.log_level)
    logger.info(f"Whoop MCP Server running on stdio (token file: {settings.token_file})")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
