"""Entrypoint for the material processing worker."""

import argparse
import asyncio
import logging
import signal
import sys

from db.schema import ensure_schema
from services.material_pipeline import MaterialProcessingScheduler, MaterialProcessingService
from services.material_pipeline.settings import PipelineSettings
from utils.logger import get_logger

logger = get_logger(__name__)


def _install_excepthook():
    def _hook(exc_type, exc, tb):
        try:
            logger.exception("unhandled_exception", exc_info=(exc_type, exc, tb))
        finally:
            sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = _hook


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Process uploaded study materials")
    parser.add_argument("--register", metavar="BLOB_REF", help="Register a material from a path or URL first")
    parser.add_argument("--owner", default="local", help="Owner id for --register (default: local)")
    parser.add_argument("--kind", choices=["document", "image"], default="document", help="Material kind for --register")
    parser.add_argument("--title", help="Title for --register")
    parser.add_argument("--submit", metavar="MATERIAL_ID", action="append", default=[], help="Queue a material id")
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Process queued jobs (waiting for scheduled retries) and exit instead of polling forever",
    )
    return parser


async def _serve(scheduler: MaterialProcessingScheduler) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await scheduler.start()
    try:
        await stop.wait()
    finally:
        await scheduler.stop()


async def _run(args) -> int:
    ensure_schema()
    settings = PipelineSettings.from_env()
    scheduler = MaterialProcessingScheduler(settings=settings)
    service = MaterialProcessingService(scheduler=scheduler)

    material_ids = list(args.submit)
    if args.register:
        material = service.register_material(args.owner, args.register, args.kind, title=args.title)
        print(f"registered material {material.id}")
        material_ids.append(material.id)
    for material_id in material_ids:
        job_id = service.submit_for_processing(material_id)
        print(f"queued job {job_id} for material {material_id}")

    if args.drain:
        processed = await scheduler.run_until_idle(wait_for_scheduled=True)
        for material_id in material_ids:
            overview = service.get_material_overview(material_id)
            print(f"material {material_id}: {overview['status']} ({overview['progress']:.0%})")
            if overview["error_message"]:
                print(f"  error: {overview['error_message']}")
        logger.info("Drained material queue; processed_jobs=%s", processed)
        return 0

    await _serve(scheduler)
    return 0


def main():
    _install_excepthook()
    args = build_parser().parse_args()
    try:
        code = asyncio.run(_run(args))
    except Exception:
        logger.exception("material_worker_runtime_failure")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
