"""Shared settings persistence for the gather bot.

Provides load/save for settings.json with validation and defaults, and the
mapping between the flat JSON form and the immutable BotSettings value.
Used by startup.py and web/dashboard.py.

Key exports:
    SETTINGS_FILE     — absolute path to settings.json
    DEFAULTS          — default settings dict
    load_settings     — load + validate + merge with defaults
    save_settings     — write settings dict to JSON
    settings_from_dict / settings_to_dict — flat dict <-> BotSettings
"""

import json
import os
import tempfile

from botlog import get_logger
from config import (validate_settings, BotSettings, ManualRegion, ManualClickPoints,
                    TEMPLATE_DIR, SCREENSHOT_DIR, DEFAULT_ACCOUNT_ID)

SETTINGS_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "settings.json")

DEFAULTS = {
    "max_active_marches": 2,
    "gather_stone": True,
    "gather_wood": True,
    "gather_ore": True,
    "gather_food": True,
    "gather_rune": True,
    "manual_ocr_enabled": True,
    "manual_ocr_points": [[72, 342], [100, 341], [99, 368], [70, 368]],
    "indicator_gate_enabled": True,
    "indicator_gate_points": [[1, 333], [128, 322], [122, 446], [1, 452]],
    "gate_min_confidence": 0.50,
    "manual_clicks_enabled": True,
    "lowest_tier_point": [1353, 526],
    "deploy_point": [1232, 674],
    "template_root": TEMPLATE_DIR,
    "screenshot_dir": SCREENSHOT_DIR,
    "account_id": DEFAULT_ACCOUNT_ID,
    "verbose_logging": False,
    "save_click_debug": False,
    "save_army_debug": False,
    "web_port": 8080,
}


def _points(value):
    return tuple(tuple(p) for p in value)


def settings_from_dict(data):
    """Build a BotSettings from a flat (already validated) settings dict."""
    merged = {**DEFAULTS, **data}
    return BotSettings(
        max_active_marches=merged["max_active_marches"],
        gather_stone=merged["gather_stone"],
        gather_wood=merged["gather_wood"],
        gather_ore=merged["gather_ore"],
        gather_food=merged["gather_food"],
        gather_rune=merged["gather_rune"],
        manual_ocr=ManualRegion(enabled=merged["manual_ocr_enabled"],
                                points=_points(merged["manual_ocr_points"])),
        indicator_gate=ManualRegion(enabled=merged["indicator_gate_enabled"],
                                    points=_points(merged["indicator_gate_points"]),
                                    min_confidence=float(merged["gate_min_confidence"])),
        manual_clicks=ManualClickPoints(enabled=merged["manual_clicks_enabled"],
                                        lowest_tier=tuple(merged["lowest_tier_point"]),
                                        deploy=tuple(merged["deploy_point"])),
        template_root=merged["template_root"],
        screenshot_dir=merged["screenshot_dir"],
        account_id=merged["account_id"],
        verbose_logging=merged["verbose_logging"],
        save_click_debug=merged["save_click_debug"],
        save_army_debug=merged["save_army_debug"],
        web_port=merged["web_port"],
    )


def settings_to_dict(settings):
    """Flatten a BotSettings into the JSON-friendly form stored on disk."""
    return {
        "max_active_marches": settings.max_active_marches,
        "gather_stone": settings.gather_stone,
        "gather_wood": settings.gather_wood,
        "gather_ore": settings.gather_ore,
        "gather_food": settings.gather_food,
        "gather_rune": settings.gather_rune,
        "manual_ocr_enabled": settings.manual_ocr.enabled,
        "manual_ocr_points": [list(p) for p in settings.manual_ocr.points],
        "indicator_gate_enabled": settings.indicator_gate.enabled,
        "indicator_gate_points": [list(p) for p in settings.indicator_gate.points],
        "gate_min_confidence": settings.indicator_gate.min_confidence,
        "manual_clicks_enabled": settings.manual_clicks.enabled,
        "lowest_tier_point": list(settings.manual_clicks.lowest_tier),
        "deploy_point": list(settings.manual_clicks.deploy),
        "template_root": settings.template_root,
        "screenshot_dir": settings.screenshot_dir,
        "account_id": settings.account_id,
        "verbose_logging": settings.verbose_logging,
        "save_click_debug": settings.save_click_debug,
        "save_army_debug": settings.save_army_debug,
        "web_port": settings.web_port,
    }


def load_settings():
    """Load settings from disk, merging with defaults and validating."""
    _log = get_logger("settings")
    try:
        with open(SETTINGS_FILE, "r") as f:
            saved = json.load(f)
        merged = {**DEFAULTS, **saved}
        merged, warnings = validate_settings(merged, DEFAULTS)
        for w in warnings:
            _log.warning("Settings: %s", w)
        _log.info("Settings loaded (%d keys, %d from file)", len(merged), len(saved))
        return merged
    except FileNotFoundError:
        _log.info("No settings file found, using defaults (%d keys)", len(DEFAULTS))
        return dict(DEFAULTS)
    except json.JSONDecodeError as e:
        _log.warning("Settings file corrupted (%s), using defaults", e)
        return dict(DEFAULTS)


def save_settings(settings):
    """Write settings dict to settings.json."""
    _log = get_logger("settings")
    try:
        dir_name = os.path.dirname(SETTINGS_FILE)
        with tempfile.NamedTemporaryFile("w", dir=dir_name, suffix=".tmp",
                                         delete=False) as tmp:
            json.dump(settings, tmp, indent=2)
            tmp_path = tmp.name
        os.replace(tmp_path, SETTINGS_FILE)
        _log.debug("Settings saved (%d keys)", len(settings))
    except OSError as e:
        _log.error("Failed to save settings: %s", e)
