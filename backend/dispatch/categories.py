"""
Unitwatch — Tool Categories

Maps each systemd tool to the category that picks its baseline timeout.
"""
from resilience.models import Category

TOOL_CATEGORIES = {
    # Status (fast)
    "systemd_list_units": Category.STATUS,
    "systemd_unit_status": Category.STATUS,
    "systemd_failed_units": Category.STATUS,
    "systemd_timers": Category.STATUS,

    # Query (medium)
    "systemd_journal_query": Category.QUERY,
    "systemd_journal_tail": Category.QUERY,
    "systemd_dependencies": Category.QUERY,
    "systemd_cat_unit": Category.QUERY,
    "systemd_unit_resources": Category.QUERY,
    "systemd_sample_resources": Category.QUERY,
    "systemd_boot_log": Category.QUERY,

    # Action (slow, mutating)
    "systemd_start": Category.ACTION,
    "systemd_stop": Category.ACTION,
    "systemd_restart": Category.ACTION,
    "systemd_reload": Category.ACTION,
    "systemd_enable": Category.ACTION,
    "systemd_disable": Category.ACTION,

    # Heavy (very slow)
    "systemd_daemon_reload": Category.HEAVY,

    # Diagnostic (AI-assisted)
    "systemd_diagnose": Category.DIAGNOSTIC,
    "systemd_analyze_boot": Category.DIAGNOSTIC,
}


def classify_command(tool_name: str) -> Category:
    """Category for a tool name. Unknown tools are treated as queries."""
    return TOOL_CATEGORIES.get(tool_name, Category.QUERY)
