import asyncio
import tempfile
import unittest
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import web
from aiohttp.test_utils import TestServer

from autofetch.engine import AutoFetchEngine
from autofetch.host.artifacts import DirectoryArtifactStore
from autofetch.host.json_records import JsonRecordStore
from autofetch.host.task_runner import AsyncioTaskRunner

from support import (
    NOTIFICATION_FIELD,
    SOURCES_FIELD,
    URL_FIELD,
    make_config,
    read_records,
    write_records,
)

REPORT = b"%PDF-1.7 annual report, first edition"


class FlakyArtifactStore(DirectoryArtifactStore):
    """Fails to create artifacts for the records listed in fail_for."""

    def __init__(self, root: Any) -> None:
        super().__init__(root)
        self.fail_for: set = set()

    async def create(self, *, record_id: int, **kwargs: Any) -> int:
        if record_id in self.fail_for:
            raise OSError(f"disk full while storing artifact for record {record_id}")
        return await super().create(record_id=record_id, **kwargs)


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.files: Dict[str, Dict[str, Any]] = {}
        self.requests: List[Tuple[str, Optional[str]]] = []
        self.since: List[Optional[str]] = []
        self.gate: Optional[asyncio.Event] = None

        app = web.Application()
        app.router.add_get("/redirect.pdf", self._redirect)
        app.router.add_get("/protected.pdf", self._protected)
        app.router.add_get("/{name:.*}", self._serve)
        self.server = TestServer(app)
        await self.server.start_server()
        self.runner = AsyncioTaskRunner(concurrency=2)

    async def asyncTearDown(self) -> None:
        await self.runner.shutdown()
        await self.server.close()
        self._tmp.cleanup()

    def url(self, name: str) -> str:
        return str(self.server.make_url(f"/{name}"))

    def make_engine(self, artifact_store_cls=DirectoryArtifactStore, **settings: Any) -> AutoFetchEngine:
        self.config = make_config(self.root, **settings)
        self.records_path = Path(self.config.storage.records_path)
        self.records = JsonRecordStore(self.records_path)
        self.artifacts = artifact_store_cls(self.config.storage.artifacts_dir)
        return AutoFetchEngine(
            config=self.config,
            record_store=self.records,
            artifact_store=self.artifacts,
            task_runner=self.runner,
        )

    async def scan(self, engine: AutoFetchEngine) -> int:
        queued = await engine.run_scan()
        await self.runner.wait_idle()
        return queued

    async def _serve(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        self.requests.append((name, request.headers.get("If-None-Match")))
        self.since.append(request.headers.get("If-Modified-Since"))
        if self.gate is not None:
            await self.gate.wait()
        spec = self.files.get(name)
        if spec is None:
            return web.Response(status=404, reason="Not Found")
        etag = spec.get("etag")
        if etag and request.headers.get("If-None-Match") == etag:
            return web.Response(status=304, headers={"ETag": etag})
        last_modified = spec.get("last_modified")
        if last_modified and request.headers.get("If-Modified-Since") == last_modified:
            return web.Response(status=304)
        headers = dict(spec.get("headers", {}))
        if etag:
            headers["ETag"] = etag
        if last_modified:
            headers["Last-Modified"] = last_modified
        return web.Response(
            status=spec.get("status", 200),
            reason=spec.get("reason"),
            body=spec.get("body", b""),
            headers=headers,
        )

    async def _redirect(self, request: web.Request) -> web.Response:
        self.requests.append(("redirect.pdf", None))
        response = web.Response(status=302, headers={"Location": "/protected.pdf"})
        response.set_cookie("session", "abc123")
        return response

    async def _protected(self, request: web.Request) -> web.Response:
        self.requests.append(("protected.pdf", None))
        if request.cookies.get("session") != "abc123":
            return web.Response(status=403, reason="Forbidden")
        return web.Response(
            body=b"%PDF-1.4 statement",
            headers={"Content-Disposition": 'attachment; filename="statement.pdf"'},
        )


class FanOutTests(EngineTestCase):
    async def test_changed_file_is_attached_to_every_owning_record(self) -> None:
        engine = self.make_engine()
        self.files["docs/report.pdf"] = {"body": REPORT}
        report_url = self.url("docs/report.pdf")
        write_records(
            self.records_path,
            {
                7: {URL_FIELD: report_url},
                12: {URL_FIELD: "", SOURCES_FIELD: [report_url]},
            },
        )

        self.assertEqual(await self.scan(engine), 1)

        self.assertEqual(await engine.url_count(), 1)
        for record_id in (7, 12):
            artifacts = self.artifacts.list_for_record(record_id)
            self.assertEqual(len(artifacts), 1)
            self.assertEqual(artifacts[0].filename, "report.pdf")
            self.assertEqual(artifacts[0].field, "files")
            self.assertTrue(artifacts[0].comment.startswith("Retrieved by AutoFetch on "))
            self.assertEqual(self.artifacts.path_for(artifacts[0].artifact_id).read_bytes(), REPORT)

        records = read_records(self.records_path)
        self.assertTrue(records["7"][NOTIFICATION_FIELD])
        self.assertTrue(records["12"][NOTIFICATION_FIELD])

        fetched = await engine.fetch_list()
        self.assertEqual(len(fetched), 2)
        self.assertEqual({entry.url for entry in fetched}, {report_url})

        recent = await engine.recently_checked()
        self.assertEqual(sorted(row.record_id for row in recent), [7, 12])
        self.assertEqual(list(Path(self.config.storage.temp_dir).iterdir()), [])

    async def test_unchanged_content_is_not_ingested_again(self) -> None:
        engine = self.make_engine()
        self.files["report.pdf"] = {"body": REPORT}
        report_url = self.url("report.pdf")
        write_records(self.records_path, {7: {URL_FIELD: report_url}})
        await self.scan(engine)

        outcome = await engine.check_url(report_url)

        self.assertEqual(outcome.status, "Unchanged")
        self.assertEqual(len(self.artifacts.list_for_record(7)), 1)
        self.assertEqual(len(await engine.fetch_list()), 1)
        # Just checked, so nothing is stale yet.
        self.assertEqual(await self.scan(engine), 0)

    async def test_new_content_adds_a_new_artifact(self) -> None:
        engine = self.make_engine()
        self.files["report.pdf"] = {"body": REPORT}
        report_url = self.url("report.pdf")
        write_records(self.records_path, {7: {URL_FIELD: report_url}})
        await self.scan(engine)

        self.files["report.pdf"] = {"body": REPORT + b", second edition"}
        outcome = await engine.check_url(report_url)

        self.assertEqual(outcome.status, "Changed")
        self.assertEqual(len(self.artifacts.list_for_record(7)), 2)
        self.assertEqual(len(await engine.fetch_list()), 2)

    async def test_failed_ingestion_is_retried_on_next_check(self) -> None:
        engine = self.make_engine(artifact_store_cls=FlakyArtifactStore)
        self.artifacts.fail_for = {12}
        self.files["report.pdf"] = {"body": REPORT}
        report_url = self.url("report.pdf")
        write_records(self.records_path, {7: {URL_FIELD: report_url}, 12: {SOURCES_FIELD: report_url}})

        with self.assertLogs("autofetch.host.task_runner", level="ERROR"):
            await self.scan(engine)

        self.assertEqual(len(self.artifacts.list_for_record(7)), 1)
        self.assertEqual(self.artifacts.list_for_record(12), [])
        self.assertEqual(await engine.recently_checked(), [])
        self.assertEqual(list(Path(self.config.storage.temp_dir).iterdir()), [])

        self.artifacts.fail_for = set()
        outcome = await engine.check_url(report_url)

        self.assertEqual(outcome.status, "Changed")
        self.assertEqual(len(self.artifacts.list_for_record(7)), 2)
        self.assertEqual(len(self.artifacts.list_for_record(12)), 1)

    async def test_artifact_deletion_clears_its_fetch_log_entry(self) -> None:
        engine = self.make_engine()
        self.files["report.pdf"] = {"body": REPORT}
        report_url = self.url("report.pdf")
        write_records(self.records_path, {7: {URL_FIELD: report_url}, 12: {SOURCES_FIELD: report_url}})
        await self.scan(engine)
        artifact_id = self.artifacts.list_for_record(7)[0].artifact_id

        self.assertTrue(await self.artifacts.delete(artifact_id))
        removed = await engine.on_artifact_deleted(artifact_id)

        self.assertEqual(removed, 1)
        remaining = await engine.fetch_list()
        self.assertEqual(len(remaining), 1)
        self.assertNotEqual(remaining[0].artifact_id, artifact_id)


class ConditionalRequestTests(EngineTestCase):
    async def test_stored_etag_is_sent_and_not_modified_is_unchanged(self) -> None:
        engine = self.make_engine()
        self.files["report.pdf"] = {"body": REPORT, "etag": '"v1"'}
        report_url = self.url("report.pdf")
        write_records(self.records_path, {7: {URL_FIELD: report_url}})
        await self.scan(engine)
        self.assertEqual(self.requests, [("report.pdf", None)])

        self.files["report.pdf"]["body"] = b"served only to clients without the etag"
        outcome = await engine.check_url(report_url)

        self.assertEqual(self.requests[-1], ("report.pdf", '"v1"'))
        self.assertEqual(outcome.status, "Unchanged")
        self.assertEqual(len(self.artifacts.list_for_record(7)), 1)

        self.files["report.pdf"]["etag"] = '"v2"'
        outcome = await engine.check_url(report_url)

        self.assertEqual(outcome.status, "Changed")
        self.assertEqual(outcome.etag, '"v2"')
        self.assertEqual(len(self.artifacts.list_for_record(7)), 2)

    async def test_stored_last_modified_is_sent_and_not_modified_is_unchanged(self) -> None:
        engine = self.make_engine()
        stamp = "Mon, 07 Oct 2024 08:00:00 GMT"
        self.files["report.pdf"] = {"body": REPORT, "last_modified": stamp}
        report_url = self.url("report.pdf")
        write_records(self.records_path, {7: {URL_FIELD: report_url}})
        await self.scan(engine)

        self.files["report.pdf"]["body"] = b"served only to clients without the date"
        outcome = await engine.check_url(report_url)

        self.assertEqual(self.since, [None, stamp])
        self.assertEqual(outcome.status, "Unchanged")
        self.assertEqual(len(self.artifacts.list_for_record(7)), 1)

    async def test_redirect_chain_keeps_cookies_and_uses_final_headers(self) -> None:
        engine = self.make_engine()
        write_records(self.records_path, {7: {URL_FIELD: self.url("redirect.pdf")}})

        await self.scan(engine)

        self.assertEqual([name for name, _ in self.requests], ["redirect.pdf", "protected.pdf"])
        artifacts = self.artifacts.list_for_record(7)
        self.assertEqual(len(artifacts), 1)
        self.assertEqual(artifacts[0].filename, "statement.pdf")
        self.assertEqual(await engine.error_list(), [])


class ErrorReportingTests(EngineTestCase):
    async def test_latest_http_error_replaces_the_previous_one(self) -> None:
        engine = self.make_engine()
        self.files["broken.pdf"] = {"status": 500, "reason": "Internal Server Error"}
        broken_url = self.url("broken.pdf")
        write_records(self.records_path, {7: {URL_FIELD: broken_url}})

        await self.scan(engine)

        errors = await engine.error_list()
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].record_id, 7)
        self.assertEqual(errors[0].url, broken_url)
        self.assertEqual(errors[0].message, "500: Internal Server Error")

        self.files["broken.pdf"] = {"status": 503, "reason": "Service Unavailable"}
        outcome = await engine.check_url(broken_url)

        self.assertEqual(outcome.status, "HTTP-Error")
        errors = await engine.error_list()
        self.assertEqual([row.message for row in errors], ["503: Service Unavailable"])
        self.assertEqual(self.artifacts.list_for_record(7), [])
        self.assertEqual(await engine.recently_checked(), [])

    async def test_transport_failure_is_recorded(self) -> None:
        engine = self.make_engine(fetch_timeout_seconds=5)
        unreachable = "http://127.0.0.1:1/missing.pdf"
        write_records(self.records_path, {7: {URL_FIELD: unreachable}})

        await self.scan(engine)

        errors = await engine.error_list()
        self.assertEqual(len(errors), 1)
        self.assertTrue(errors[0].message.startswith("Transport Error: "))
        self.assertEqual(self.artifacts.list_for_record(7), [])


class SchedulingTests(EngineTestCase):
    async def test_scan_is_skipped_while_checks_are_outstanding(self) -> None:
        engine = self.make_engine()
        self.files["report.pdf"] = {"body": REPORT}
        write_records(self.records_path, {7: {URL_FIELD: self.url("report.pdf")}})
        self.gate = asyncio.Event()

        self.assertEqual(await engine.run_scan(), 1)
        self.assertEqual(await engine.run_scan(), 0)

        self.gate.set()
        await self.runner.wait_idle()

        self.assertEqual(len(self.requests), 1)
        self.assertEqual(len(self.artifacts.list_for_record(7)), 1)

    async def test_disallowed_primary_extension_is_not_monitored(self) -> None:
        engine = self.make_engine()
        write_records(self.records_path, {7: {URL_FIELD: self.url("setup.exe")}})

        self.assertEqual(await self.scan(engine), 0)
        self.assertEqual(await engine.url_count(), 0)

    async def test_record_filter_limits_scanned_records(self) -> None:
        engine = self.make_engine(record_filter={"category": "reports"})
        self.files["a.pdf"] = {"body": b"a"}
        self.files["b.pdf"] = {"body": b"b"}
        write_records(
            self.records_path,
            {
                7: {URL_FIELD: self.url("a.pdf"), "category": "Annual Reports"},
                8: {URL_FIELD: self.url("b.pdf"), "category": "minutes"},
            },
        )

        await self.scan(engine)

        self.assertEqual(len(self.artifacts.list_for_record(7)), 1)
        self.assertEqual(self.artifacts.list_for_record(8), [])
        self.assertEqual(await engine.url_count(), 1)

    async def test_periodic_scan_runs_until_stopped(self) -> None:
        engine = self.make_engine()
        self.files["report.pdf"] = {"body": REPORT}
        write_records(self.records_path, {7: {URL_FIELD: self.url("report.pdf")}})

        engine.start_periodic()
        for _ in range(250):
            if self.artifacts.list_for_record(7):
                break
            await asyncio.sleep(0.02)
        await engine.stop_periodic()
        await self.runner.wait_idle()

        self.assertEqual(len(self.artifacts.list_for_record(7)), 1)


class DisabledEngineTests(EngineTestCase):
    async def test_disabled_engine_does_nothing(self) -> None:
        engine = self.make_engine(enable_fetching=False)
        self.files["report.pdf"] = {"body": REPORT}
        report_url = self.url("report.pdf")
        write_records(self.records_path, {7: {URL_FIELD: report_url}})

        self.assertFalse(engine.enabled)
        self.assertEqual(await engine.run_scan(), 0)
        self.assertIsNone(await engine.check_url(report_url))
        self.assertEqual(self.requests, [])

    async def test_unknown_url_is_not_checked(self) -> None:
        engine = self.make_engine()

        self.assertIsNone(await engine.check_url(self.url("never-registered.pdf")))
        self.assertEqual(self.requests, [])


if __name__ == "__main__":
    unittest.main()
