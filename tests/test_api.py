import io
from pathlib import Path

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from artcert.core.authority import CertificationAuthority
from artcert.core.errors import StoreUnavailableError
from artcert.core.index import BandedIndex
from artcert.core.records import InMemoryRecordStore
from artcert.core.storage import StorageClient
from artcert.main import create_app

BITS = 64
THRESHOLD = 6


class UnavailableStore(InMemoryRecordStore):
    def atomic_insert(self, record, uniqueness_predicate):
        raise StoreUnavailableError("connection refused")


def png_bytes(seed):
    rng = np.random.default_rng(seed)
    blocks = rng.integers(0, 256, size=(8, 8, 3), dtype=np.uint8)
    image = Image.fromarray(blocks, "RGB").resize((128, 128), Image.Resampling.NEAREST)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def client(store, tmp_path):
    authority = CertificationAuthority(BandedIndex(store, THRESHOLD, BITS))
    app = create_app(authority, StorageClient(use_gcs=False, local_dir=str(tmp_path)))
    with TestClient(app) as test_client:
        yield test_client


def certify_hex(client, fingerprint, name="art.png"):
    return client.post("/fingerprints/certify", json={"fingerprint": fingerprint, "original_name": name})


def test_fingerprint_certification_flow(client):
    created = certify_hex(client, "0000000000000000")
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "certified"
    certification_id = body["certificate"]["certification_id"]

    exact = certify_hex(client, "0000000000000000", name="copy.png")
    assert exact.status_code == 200
    assert exact.json()["status"] == "exact_duplicate"
    assert exact.json()["certificate"]["certification_id"] == certification_id

    near = certify_hex(client, "0000000000000007")
    assert near.json()["status"] == "near_duplicate"
    assert near.json()["distance"] == 3
    assert near.json()["similarity_score"] == pytest.approx(1 - 3 / 64)

    lookup = client.get(f"/certificates/{certification_id}")
    assert lookup.status_code == 200
    assert lookup.json()["original_name"] == "art.png"
    assert lookup.json()["fingerprint_bits"] == 64

    assert client.get("/certificates/does-not-exist").status_code == 404


def test_fingerprint_check_writes_nothing(client, store):
    response = client.post("/fingerprints/check", json={"fingerprint": "ffff0000ffff0000"})

    assert response.status_code == 200
    assert response.json()["status"] == "original"
    assert response.json()["certificate"] is None
    assert store.count() == 0


@pytest.mark.parametrize("payload", [
    {"fingerprint": "not-hex", "original_name": "art.png"},
    {"fingerprint": "00ff", "original_name": "art.png"},
    {"fingerprint": "0000000000000000"},
    {"fingerprint": "0000000000000000", "original_name": "  "},
])
def test_malformed_fingerprint_requests(client, store, payload):
    response = client.post("/fingerprints/certify", json=payload)

    assert response.status_code == 422
    assert response.json()["error"] == "malformed_input"
    assert store.count() == 0


def test_image_upload_certified_and_stored(client, tmp_path):
    data = png_bytes(1)

    response = client.post("/certify", files={"file": ("sunrise.png", data, "image/png")})

    assert response.status_code == 201
    certificate = response.json()["certificate"]
    assert certificate["original_name"] == "sunrise.png"
    assert certificate["storage_locator"].startswith("local://")
    stored = Path(certificate["storage_locator"][len("local://"):])
    assert stored.read_bytes() == data
    assert tmp_path in stored.parents

    again = client.post("/certify", files={"file": ("sunrise-copy.png", data, "image/png")})
    assert again.status_code == 200
    assert again.json()["status"] == "exact_duplicate"
    assert again.json()["certificate"]["certification_id"] == certificate["certification_id"]


def test_image_check_stores_nothing(client, store, tmp_path):
    response = client.post("/check", files={"file": ("draft.png", png_bytes(2), "image/png")})

    assert response.status_code == 200
    assert response.json()["status"] == "original"
    assert store.count() == 0
    assert not any(p.is_file() for p in tmp_path.rglob("*"))


def test_unsupported_media_type(client):
    response = client.post("/certify", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert response.status_code == 415


def test_unreadable_image(client):
    response = client.post("/certify", files={"file": ("broken.png", b"not a png", "image/png")})
    assert response.status_code == 422


def test_stats_and_health(client):
    certify_hex(client, "00000000ffffffff")

    stats = client.get("/stats").json()["certification"]
    assert stats["certified_count"] == 1
    assert stats["near_duplicate_threshold"] == THRESHOLD
    assert stats["index_kind"] == "banded"

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["components"]["record_store"] == "healthy"


def test_store_outage_returns_503(tmp_path):
    authority = CertificationAuthority(BandedIndex(UnavailableStore(), THRESHOLD, BITS))
    app = create_app(authority, StorageClient(use_gcs=False, local_dir=str(tmp_path)))

    with TestClient(app) as client:
        response = certify_hex(client, "0123456789abcdef")

    assert response.status_code == 503
    assert response.headers["retry-after"] == "5"
    assert response.json()["error"] == "store_unavailable"


@pytest.mark.filterwarnings("ignore::PIL.Image.DecompressionBombWarning")
@pytest.mark.parametrize("path", ["/certify", "/check"])
def test_oversized_image_rejected_as_malformed(client, store, monkeypatch, path):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1_000)

    response = client.post(path, files={"file": ("huge.png", png_bytes(3), "image/png")})

    assert response.status_code == 422
    assert response.json()["error"] == "malformed_input"
    assert store.count() == 0


def test_generic_content_type_falls_back_to_extension(client):
    response = client.post("/certify", files={"file": ("canvas.png", png_bytes(4), "application/octet-stream")})

    assert response.status_code == 201
    assert response.json()["certificate"]["original_name"] == "canvas.png"


def test_forwarded_for_header_from_untrusted_client_is_ignored(client):
    response = client.post(
        "/fingerprints/certify",
        json={"fingerprint": "f0f0f0f0f0f0f0f0", "original_name": "art.png"},
        headers={"X-Forwarded-For": "203.0.113.9"},
    )

    assert response.status_code == 201
    assert response.json()["certificate"]["source_origin"] == "testclient"
