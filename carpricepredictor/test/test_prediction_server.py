# Copyright 2025 The Kubernetes Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import pytest
from fastapi.testclient import TestClient

from ..prediction import prediction_server


@pytest.fixture
def client(processed_dir):
    """Point the server at a fresh bundle directory and an empty active set."""
    prediction_server.configure(str(processed_dir), load_timeout=5.0)
    return TestClient(prediction_server.app)


def _predict_body(**overrides):
    body = {
        "make": "Toyota",
        "model": "Camry",
        "year_of_production": 2015,
        "target_year": 2025,
        "transmission": "manual",
        "fuel_type": "gas",
        "mileage_km": 90000,
    }
    body.update(overrides)
    return body


class TestPredict:

    def test_predict_all_algorithms(self, client):
        r = client.post("/api/v1/prediction/predict", json=_predict_body())
        assert r.status_code == 200
        data = r.json()

        assert data["currency"] == "EUR"
        assert data["year_of_production"] == 2015
        assert data["target_year"] == 2025
        assert [res["algorithm"] for res in data["results"]] == ["linear", "ridge", "ridge_rf", "ridge_gb"]
        for res in data["results"]:
            assert res["predicted_price"] > 0
            assert round(res["predicted_price"], 2) == res["predicted_price"]
            assert set(res["metrics"]) == {"mse", "mae", "r2"}
        assert data["model_info"]["version"] == "v1"

    def test_unknown_model_is_404(self, client):
        r = client.post("/api/v1/prediction/predict", json=_predict_body(make="Tesla", model="Model 3"))
        assert r.status_code == 404

    def test_unknown_models_do_not_accumulate_load_gates(self, client):
        for i in range(50):
            r = client.post("/api/v1/prediction/predict", json=_predict_body(make="Nosuch", model=f"Model {i}"))
            assert r.status_code == 404
        assert prediction_server.hot_loader._gates == {}

    def test_negative_mileage_is_rejected(self, client):
        r = client.post("/api/v1/prediction/predict", json=_predict_body(mileage_km=-1))
        assert r.status_code == 422

    def test_corrupt_bundle_is_503(self, client, processed_dir):
        (processed_dir / "ford_f_150.json").write_text("{}")
        r = client.post("/api/v1/prediction/predict", json=_predict_body(make="Ford", model="F-150"))
        assert r.status_code == 503

    def test_switching_models_swaps_active_bundle(self, client):
        client.post("/api/v1/prediction/predict", json=_predict_body())
        assert client.get("/api/v1/prediction/active").json()["bundle_key"] == "toyota_camry"

        r = client.post("/api/v1/prediction/predict", json=_predict_body(make="Ford", model="F-150"))
        assert r.status_code == 200
        active = client.get("/api/v1/prediction/active").json()
        assert active["bundle_key"] == "ford_f_150"
        assert active["algorithms"] == ["linear", "ridge", "ridge_rf", "ridge_gb"]


class TestPredictRange:

    def test_one_item_per_target_year(self, client):
        body = _predict_body(from_year=2024, to_year=2026)
        del body["target_year"]
        r = client.post("/api/v1/prediction/predict/range", json=body)
        assert r.status_code == 200
        data = r.json()

        assert [item["target_year"] for item in data["items"]] == [2024, 2025, 2026]
        assert all(item["year_of_production"] == 2015 for item in data["items"])
        assert data["currency"] == "EUR"

    def test_reversed_range_is_400(self, client):
        body = _predict_body(from_year=2026, to_year=2024)
        r = client.post("/api/v1/prediction/predict/range", json=body)
        assert r.status_code == 400

    def test_range_too_wide_is_400(self, client, monkeypatch):
        monkeypatch.setattr(prediction_server.settings, "MAX_RANGE_YEARS", 5)
        body = _predict_body(from_year=2020, to_year=2030)
        r = client.post("/api/v1/prediction/predict/range", json=body)
        assert r.status_code == 400


class TestCatalog:

    def test_catalog_sorted_by_display_model(self, client):
        items = client.get("/api/v1/catalog").json()["items"]
        assert [i["model_id"] for i in items] == ["toyota_camry", "ford_f_150"]
        assert items[0]["file_name"] == "toyota_camry.json"
        assert items[0]["algorithms"] == ["linear", "ridge", "rf", "gb"]

    def test_manufacturers(self, client):
        assert client.get("/api/v1/manufacturers").json() == [
            {"value": "ford", "label": "Ford"},
            {"value": "toyota", "label": "Toyota"},
        ]

    def test_models_list(self, client):
        r = client.post("/api/v1/models/list", json={"manufacturer": "TOYOTA"})
        assert r.status_code == 200
        assert r.json() == [{"value": "toyota_camry", "label": "Camry"}]

    def test_models_list_requires_manufacturer(self, client):
        assert client.post("/api/v1/models/list", json={"manufacturer": "  "}).status_code == 400

    def test_model_details(self, client):
        r = client.post("/api/v1/models/details", json={"manufacturer": "toyota", "model": "camry"})
        assert r.status_code == 200
        data = r.json()
        assert data["fuels"] == [{"value": "diesel", "label": "Diesel"}, {"value": "gas", "label": "Gas"}]
        assert data["transmissions"] == [{"value": "automatic", "label": "Automatic"},
                                         {"value": "manual", "label": "Manual"}]
        assert data["anchor_target_year"] == 2025
        assert data["min_year"] <= data["max_year"]

    def test_model_details_allow_lists(self, client):
        r = client.post("/api/v1/models/details", json={
            "manufacturer": "Toyota", "model": "Camry",
            "allowed_fuels": ["GAS"], "allowed_transmissions": ["manual", "cvt"],
        })
        data = r.json()
        assert [f["value"] for f in data["fuels"]] == ["gas"]
        assert [t["value"] for t in data["transmissions"]] == ["manual"]

    def test_model_details_not_found(self, client):
        r = client.post("/api/v1/models/details", json={"manufacturer": "toyota", "model": "corolla"})
        assert r.status_code == 404

    def test_model_details_requires_fields(self, client):
        assert client.post("/api/v1/models/details", json={"manufacturer": "toyota"}).status_code == 400


class TestProbes:

    def test_healthz(self, client):
        r = client.get("/healthz")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_readyz_with_bundles(self, client):
        r = client.get("/readyz")
        assert r.status_code == 200
        assert r.json()["status"] == "ready"
        assert r.json()["bundles"] == 2

    def test_readyz_without_bundles(self, tmp_path):
        prediction_server.configure(str(tmp_path / "empty"))
        r = TestClient(prediction_server.app).get("/readyz")
        assert r.status_code == 503

    def test_active_is_503_before_first_prediction(self, client):
        assert client.get("/api/v1/prediction/active").status_code == 503
