"""Gather bot startup & shutdown — shared initialization for the entry points.

Used by ``run_web.py`` and by tests that need a fully wired engine.
"""

import logging
import random
import threading

import config
from config import RuntimeSettings
from settings import load_settings, settings_from_dict


def initialize():
    """One-time app startup: logging, settings, devices, OCR warmup.

    Returns the loaded BotSettings.
    """
    from botlog import setup_logging, get_logger, set_console_verbose
    setup_logging()
    config.log_adb_path()

    log = get_logger("startup")

    settings = settings_from_dict(load_settings())
    set_console_verbose(settings.verbose_logging)

    # Connect emulators
    from devices import auto_connect_emulators
    auto_connect_emulators()

    # Pre-initialize OCR engine in background thread
    from vision import warmup_ocr
    threading.Thread(target=warmup_ocr, daemon=True).start()

    log.info("Gather bot initialized.")
    return settings


def build_engine(settings=None, transport=None, detector=None, ocr=None,
                 rng=None, debug=None, clock=None, sleep=None):
    """Wire every component together and return the BotEngine.

    Collaborators default to the real adb/OpenCV/EasyOCR implementations;
    tests pass fakes.
    """
    from devices import AdbTransport
    from vision import TemplateDetector, OcrReader, FileDebugSink
    from mode import ModeController
    from navigation import StateResolver, MapNavigator
    from army import ArmyLimitMonitor
    from tasks import GatherTask
    from scheduler import Scheduler
    from runners import BotEngine

    runtime = settings if isinstance(settings, RuntimeSettings) else RuntimeSettings(settings)
    transport = transport or AdbTransport()
    detector = detector or TemplateDetector()
    ocr = ocr or OcrReader()
    rng = rng or random.Random()
    debug = debug or FileDebugSink()

    mode = ModeController()
    resolver = StateResolver(detector)
    navigator = MapNavigator(transport, detector, resolver, runtime, rng)
    monitor = ArmyLimitMonitor(transport, resolver, detector, ocr, runtime, debug)
    gather = GatherTask(transport, resolver, navigator, monitor, mode,
                        detector, ocr, runtime, rng=rng, debug=debug)
    scheduler = Scheduler(mode, monitor, [gather], clock=clock)
    return BotEngine(scheduler, mode, runtime, gather=gather, clock=clock, sleep=sleep)


def shutdown(engine=None):
    """Graceful shutdown: stop the worker, save stats, flush logs."""
    from botlog import get_logger, stats

    log = get_logger("startup")
    log.info("Shutting down...")

    if engine is not None:
        try:
            engine.stop()
        except Exception as e:
            log.error("Failed to stop bot engine: %s", e)

    # Save session stats
    try:
        stats.save()
        log.info("Session stats saved")
        summary = stats.summary()
        if summary:
            log.info("Session stats:\n%s", summary)
    except OSError as e:
        log.error("Failed to save stats: %s", e)

    logging.shutdown()
