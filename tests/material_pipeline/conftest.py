import pytest

from pipeline_fakes import FakeExtractor, FakeGateway, RecordingSleep, make_settings
from services.material_pipeline.job_repo import MaterialJobRepository
from services.material_pipeline.material_repo import MaterialRepository
from services.material_pipeline.scheduler import MaterialProcessingScheduler
from services.material_pipeline.stage_runner import StageRunner


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def build_pipeline(sqlite_db, recording_sleep):
    """Wire a scheduler over SQLite with fake provider collaborators."""

    def _build(text, gateway=None, extractor=None, **setting_overrides):
        settings = make_settings(**setting_overrides)
        gateway = gateway or FakeGateway()
        extractor = extractor or FakeExtractor(text)
        material_repo = MaterialRepository()
        runner = StageRunner(
            repo=material_repo,
            gateway=gateway,
            extractor=extractor,
            settings=settings,
            sleep=recording_sleep,
        )
        scheduler = MaterialProcessingScheduler(
            settings=settings,
            material_repo=material_repo,
            job_repo=MaterialJobRepository(),
            stage_runner=runner,
            worker_id="test-worker",
        )
        return scheduler, gateway, extractor

    return _build
