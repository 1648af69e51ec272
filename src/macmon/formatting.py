"""Display helpers shared by the dashboard and the CLI."""

from macmon.models import HealthLevel, Rate, Unit

LEVEL_STYLES = {
    HealthLevel.NOMINAL: "green",
    HealthLevel.ELEVATED: "yellow",
    HealthLevel.CRITICAL: "red",
}


def format_bytes(size: float) -> str:
    """Format bytes as human-readable string."""
    value = float(size)
    for unit in ["B", "K", "M", "G", "T"]:
        if value < 1024:
            return f"{value:.1f}{unit}" if unit != "B" else f"{int(value)}{unit}"
        value /= 1024
    return f"{value:.1f}P"


def format_rate(rate: Rate) -> str:
    """Render a rate in its unit; estimates are marked with a tilde."""
    if rate.unit is Unit.BYTES_PER_SECOND:
        text = f"{format_bytes(rate.value)}/s"
    elif rate.unit is Unit.CELSIUS:
        text = f"{rate.value:.0f}°C"
    else:
        text = f"{rate.value:.1f}%"
    return f"~{text}" if rate.estimated else text


def format_uptime(seconds: float) -> str:
    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    if days > 0:
        return f"{days} days, {hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def usage_bar(percent: float, color: str, width: int = 20) -> str:
    """Rich-markup bar of ``width`` cells filled to ``percent``."""
    filled = max(0, min(width, int(percent / 100 * width)))
    return f"[{color}]" + "█" * filled + f"[/{color}]" + "[dim]" + "░" * (width - filled) + "[/dim]"
