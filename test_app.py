import unittest
from unittest import mock
import tempfile
import json
from pathlib import Path

import requests
from fastapi.testclient import TestClient

import app as server
import pinger
from config import config, resolve_asset_path, MODULE_DIR
from model import ModelService
from test_model import build_test_model, encode_image

API_KEY = "test-key"


class ServerTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.model_path = build_test_model(self.tmp / "model.onnx")
        self.labels_path = self.tmp / "class_names.json"
        self.use_service(ModelService(self.model_path, self.labels_path))

        key_patch = mock.patch.object(config, "API_KEY", API_KEY)
        key_patch.start()
        self.addCleanup(key_patch.stop)

        self.client = TestClient(server.app)

    def tearDown(self):
        server.app.dependency_overrides.clear()
        self._tmp.cleanup()

    def use_service(self, service):
        self.service = service
        server.app.dependency_overrides[server.get_model_service] = lambda: service

    def post_image(self, data, **kwargs):
        headers = kwargs.pop("headers", {"x-api-key": API_KEY})
        return self.client.post(
            "/predict", headers=headers,
            files={"image": ("upload.png", data, "image/png")}, **kwargs)


class TestApiKey(ServerTestCase):

    def test_health_needs_no_key(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_missing_key(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Missing API key"})

    def test_wrong_key(self):
        response = self.client.get("/", headers={"x-api-key": "nope"})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {"error": "Invalid API key"})

    def test_key_sources(self):
        for kwargs in (
            {"headers": {"x-api-key": API_KEY}},
            {"headers": {"Authorization": f"Bearer {API_KEY}"}},
            {"headers": {"Authorization": f"ApiKey {API_KEY}"}},
            {"headers": {"Authorization": API_KEY}},
            {"params": {"api_key": API_KEY}},
        ):
            response = self.client.get("/", **kwargs)
            self.assertEqual(response.status_code, 200, kwargs)

    def test_unconfigured_key(self):
        with mock.patch.object(config, "API_KEY", None):
            response = self.client.get("/", headers={"x-api-key": API_KEY})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Server misconfiguration"})


class TestRoutes(ServerTestCase):

    def test_root_reports_readiness(self):
        body = self.client.get("/", headers={"x-api-key": API_KEY}).json()
        self.assertEqual(body["status"], "ok")
        self.assertFalse(body["ready"])
        self.assertGreaterEqual(body["uptime"], 0)

        self.service.warmup()
        body = self.client.get("/", headers={"x-api-key": API_KEY}).json()
        self.assertTrue(body["ready"])

    def test_predict_food(self):
        response = self.post_image(encode_image((255, 0, 0)))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"result": "food"})

    def test_predict_not_food(self):
        response = self.post_image(encode_image((0, 0, 255)))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"result": "not_food"})

    def test_other_labels_map_to_not_food(self):
        self.labels_path.write_text(json.dumps(["pizza", "laptop"]), encoding="utf-8")
        self.use_service(ModelService(self.model_path, self.labels_path))
        response = self.post_image(encode_image((255, 0, 0)))
        self.assertEqual(response.json(), {"result": "not_food"})

    def test_predict_requires_key(self):
        response = self.post_image(encode_image((255, 0, 0)), headers={})
        self.assertEqual(response.status_code, 401)

    def test_missing_image_field(self):
        response = self.client.post(
            "/predict", headers={"x-api-key": API_KEY},
            files={"photo": ("upload.png", encode_image((255, 0, 0)), "image/png")})
        self.assertEqual(response.status_code, 400)
        self.assertIn("image", response.json()["error"])

    def test_bad_image_is_client_error(self):
        response = self.post_image(b"this is not an image")
        self.assertEqual(response.status_code, 400)
        self.assertIn("decode", response.json()["error"])

    def test_engine_failure_is_server_error(self):
        session = self.service.model.get_session()
        with mock.patch.object(session, "run", side_effect=RuntimeError("kernel failed")):
            response = self.post_image(encode_image((255, 0, 0)))
        self.assertEqual(response.status_code, 500)
        self.assertIn("kernel failed", response.json()["error"])

    def test_startup_survives_unreadable_label_file(self):
        self.labels_path.write_bytes(json.dumps(["x", "y"]).encode("utf-16"))
        service = ModelService(self.model_path, self.labels_path)
        with mock.patch("app.get_service", return_value=service):
            with TestClient(server.app) as client:
                self.assertTrue(service.is_ready)
                self.assertEqual(service.load_class_names(), ["food", "not_food"])
                self.assertEqual(client.get("/health").status_code, 200)

    def test_missing_model_is_unavailable(self):
        self.use_service(ModelService(self.tmp / "absent.onnx", self.labels_path))
        response = self.post_image(encode_image((255, 0, 0)))
        self.assertEqual(response.status_code, 503)
        self.assertIn("not found", response.json()["error"])


class TestPinger(unittest.TestCase):

    def tearDown(self):
        pinger.stop_ping_loop()

    def test_ping_without_url(self):
        with mock.patch.object(config, "SERVER_URL", None), \
                mock.patch("pinger.requests.get") as get:
            self.assertIsNone(pinger.ping_once())
        get.assert_not_called()

    def test_ping_sends_api_key(self):
        with mock.patch.object(config, "SERVER_URL", "http://example.test/"), \
                mock.patch.object(config, "API_KEY", "k"), \
                mock.patch("pinger.requests.get") as get:
            get.return_value.status_code = 200
            self.assertEqual(pinger.ping_once(), 200)
        get.assert_called_once_with("http://example.test/", headers={"x-api-key": "k"},
                                    timeout=pinger.REQUEST_TIMEOUT)

    def test_ping_failure_is_logged_not_raised(self):
        with mock.patch.object(config, "SERVER_URL", "http://example.test/"), \
                mock.patch("pinger.requests.get", side_effect=requests.ConnectionError("down")):
            self.assertIsNone(pinger.ping_once())

    def test_start_requires_url(self):
        with mock.patch.object(config, "SERVER_URL", None):
            with self.assertRaises(RuntimeError):
                pinger.start_ping_loop()
        self.assertFalse(pinger.is_running())

    def test_start_and_stop(self):
        with mock.patch.object(config, "SERVER_URL", "http://example.test/"):
            pinger.start_ping_loop()
            pinger.start_ping_loop()
            self.assertTrue(pinger.is_running())
        pinger.stop_ping_loop()
        self.assertFalse(pinger.is_running())

    def test_interval_range(self):
        for _ in range(50):
            interval = pinger.random_interval()
            self.assertGreaterEqual(interval, pinger.MIN_INTERVAL)
            self.assertLessEqual(interval, pinger.MAX_INTERVAL)


class TestAssetLookup(unittest.TestCase):

    def test_falls_back_to_module_dir(self):
        self.assertEqual(resolve_asset_path("no_such_asset.bin"), MODULE_DIR / "no_such_asset.bin")

    def test_finds_asset_under_cwd_models(self):
        with tempfile.TemporaryDirectory() as tmp:
            models = Path(tmp) / "models"
            models.mkdir()
            (models / "probe_asset.bin").write_bytes(b"x")
            with mock.patch("config.Path.cwd", return_value=Path(tmp)):
                self.assertEqual(resolve_asset_path("probe_asset.bin"), models / "probe_asset.bin")

    def test_existence_errors_mean_not_found(self):
        with mock.patch("config.Path.is_file", side_effect=PermissionError("denied")):
            self.assertEqual(resolve_asset_path("probe_asset.bin"), MODULE_DIR / "probe_asset.bin")


if __name__ == "__main__":
    unittest.main(verbosity=2)
