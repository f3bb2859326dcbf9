"""
Upload pipeline and speech service tests.
"""

import base64
import io

import pytest
import pytest_asyncio
from PIL import Image

from lernwelt.audio.cache import AudioCache
from lernwelt.catalog.fingerprint import file_fingerprint
from lernwelt.catalog.task_catalog import TaskCatalog
from lernwelt.db.schema import TaskContent
from lernwelt.errors import AnalysisFailure, RateLimited, SynthesisFailure
from lernwelt.services.ai.mock_provider import MockProvider
from lernwelt.services.speech import ERROR, LOADING, MISSING, READY, AudioStatusTracker, SpeechService
from lernwelt.services.uploads import UploadPipeline, make_preview

from .conftest import make_clip, make_task


def write_png(path, size=(1200, 600), color=(200, 30, 30)):
    Image.new("RGB", size, color).save(path, format="PNG")
    return path


class FakeAnalyzer:
    """Returns canned content; can fail or rate-limit a number of times."""

    def __init__(self, *, fail=False, rate_limits=0):
        self.fail = fail
        self.rate_limits = rate_limits
        self.calls = []

    async def analyze(self, image_bytes, page_number, mime_type="image/jpeg"):
        self.calls.append((page_number, mime_type))
        if self.rate_limits:
            self.rate_limits -= 1
            raise RateLimited("quota")
        if self.fail:
            raise AnalysisFailure("model refused")
        return TaskContent(
            page_number=page_number,
            grade="Klasse 3",
            subject="Deutsch",
            sub_subject="Lesen",
            task_title=f"Seite {page_number}",
        )


class FakeSpeaker:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.calls = []

    async def synthesize(self, text, cache_key):
        self.calls.append((text, cache_key))
        if cache_key in self.fail_for:
            raise SynthesisFailure("tts down")
        return make_clip(seconds=0.05)


@pytest_asyncio.fixture()
async def catalog(factory):
    c = TaskCatalog(factory, repository_type="local")
    await c.load()
    return c


# ==================== Uploads ====================

def test_preview_is_downscaled_jpeg(tmp_path):
    png = write_png(tmp_path / "page.png").read_bytes()
    preview = make_preview(png)

    assert preview.startswith("data:image/jpeg;base64,")
    img = Image.open(io.BytesIO(base64.b64decode(preview.split(",", 1)[1])))
    assert img.format == "JPEG"
    assert max(img.size) == 800


def test_preview_of_unreadable_bytes_is_none():
    assert make_preview(b"definitely not an image") is None


async def test_upload_analyzes_and_stores(catalog, tmp_path):
    pages = [write_png(tmp_path / "a.png"), write_png(tmp_path / "b.png", color=(0, 0, 0))]
    analyzer = FakeAnalyzer()
    pipeline = UploadPipeline(catalog, analyzer, retry_delays=(0,))

    report = await pipeline.process_files(pages)

    assert report.notices == []
    assert sorted(t.display_id for t in report.added) == ["K3_DEU_1", "K3_DEU_2"]
    assert [c[0] for c in analyzer.calls] == [1, 2]
    assert all(c[1] == "image/png" for c in analyzer.calls)
    stored = catalog.get_all()
    assert len(stored) == 2
    assert all(t.image_preview.startswith("data:image/jpeg") for t in stored)
    assert {t.file_fingerprint.split("-")[0] for t in stored} == {"a.png", "b.png"}


async def test_upload_same_file_twice_reports_duplicate(catalog, tmp_path):
    page = write_png(tmp_path / "seite.png")
    analyzer = FakeAnalyzer()
    pipeline = UploadPipeline(catalog, analyzer, retry_delays=(0,))

    await pipeline.process_files([page])
    report = await pipeline.process_files([page])

    assert report.added == []
    assert [n.kind for n in report.notices] == ["duplicate"]
    assert "Seite 1" in report.notices[0].message
    assert len(analyzer.calls) == 1


async def test_upload_of_file_stored_by_another_session_reports_duplicate(catalog, tmp_path):
    page = write_png(tmp_path / "seite.png")
    await catalog.repository.save(
        make_task("elsewhere", fingerprint=file_fingerprint(page), title="Schon da")
    )
    analyzer = FakeAnalyzer()
    pipeline = UploadPipeline(catalog, analyzer, retry_delays=(0,))

    report = await pipeline.process_files([page])

    assert report.added == []
    assert [n.kind for n in report.notices] == ["duplicate"]
    assert "Schon da" in report.notices[0].message
    assert analyzer.calls == []


async def test_upload_racing_another_writer_reports_duplicate(catalog, tmp_path):
    page = write_png(tmp_path / "seite.png")

    class RacingAnalyzer(FakeAnalyzer):
        async def analyze(self, image_bytes, page_number, mime_type="image/jpeg"):
            await catalog.repository.save(
                make_task("racer", fingerprint=file_fingerprint(page), title="Zuerst gespeichert")
            )
            return await super().analyze(image_bytes, page_number, mime_type)

    pipeline = UploadPipeline(catalog, RacingAnalyzer(), retry_delays=(0,))
    report = await pipeline.process_files([page])

    assert report.added == []
    assert [n.kind for n in report.notices] == ["duplicate"]
    assert "Zuerst gespeichert" in report.notices[0].message


async def test_upload_retries_rate_limits(catalog, tmp_path):
    analyzer = FakeAnalyzer(rate_limits=2)
    pipeline = UploadPipeline(catalog, analyzer, retry_delays=(0, 0, 0))

    report = await pipeline.process_files([write_png(tmp_path / "p.png")])

    assert len(report.added) == 1
    assert len(analyzer.calls) == 3


async def test_upload_analysis_failure_becomes_notice(catalog, tmp_path):
    pipeline = UploadPipeline(catalog, FakeAnalyzer(fail=True), retry_delays=(0,))
    report = await pipeline.process_files([write_png(tmp_path / "p.png")])

    assert report.added == []
    assert report.notices[0].kind == "analysis_failure"
    assert catalog.get_all() == []


async def test_upload_missing_file_is_unreadable(catalog, tmp_path):
    pipeline = UploadPipeline(catalog, FakeAnalyzer(), retry_delays=(0,))
    report = await pipeline.process_files([tmp_path / "gone.png"])
    assert [n.kind for n in report.notices] == ["unreadable"]


async def test_test_mode_generates_mock_tasks(catalog, tmp_path):
    analyzer = FakeAnalyzer()
    pipeline = UploadPipeline(catalog, analyzer, test_mode=True, mock=MockProvider(seed=3))

    report = await pipeline.process_files([write_png(tmp_path / "ignored.png")])

    assert 1 <= len(report.added) <= 3
    assert all(t.is_test_data for t in catalog.get_all())
    assert analyzer.calls == []

    remaining = await catalog.clear(only_test_data=True)
    assert remaining == []


# ==================== Speech ====================

async def test_speak_reads_through_cache(catalog):
    task = make_task("t1")
    task.teacher_section.learning_goal_de = "Zaehlen"
    await catalog.add_tasks([task])
    speaker = FakeSpeaker()
    speech = SpeechService(AudioCache(catalog), speaker)

    first = await speech.speak(task)
    second = await speech.speak(task)

    assert first is second
    assert speaker.calls == [("Zaehlen. Lesen. Rechnen. Prüfen. 5.", "t1")]
    assert await catalog.get_audio("t1") is not None


async def test_speak_empty_text_fails(catalog):
    speech = SpeechService(AudioCache(catalog), FakeSpeaker())
    with pytest.raises(SynthesisFailure):
        await speech.speak_text("   ", "nothing")


async def test_status_tracker(catalog):
    ok = make_task("ok")
    broken = make_task("broken")
    await catalog.add_tasks([ok, broken])

    speech = SpeechService(AudioCache(catalog), FakeSpeaker(fail_for={"broken"}))
    tracker = AudioStatusTracker(speech, pause=0)

    assert await tracker.check([ok, broken]) == {"ok": MISSING, "broken": MISSING}
    assert await tracker.generate_missing([ok, broken]) == 1
    assert tracker.status("ok") == READY
    assert tracker.status("broken") == ERROR

    # A second pass only retries what is not ready
    assert await tracker.generate_missing([ok, broken]) == 0
    assert await tracker.check([ok, broken]) == {"ok": READY, "broken": MISSING}


async def test_loading_status_survives_check(catalog):
    task = make_task("t1")
    tracker = AudioStatusTracker(SpeechService(AudioCache(catalog), FakeSpeaker()), pause=0)
    tracker.statuses["t1"] = LOADING
    assert await tracker.check([task]) == {"t1": LOADING}
