import pytest

from services.material_pipeline.embedding_index import EmbeddingIndex, point_id
from services.material_pipeline.errors import StoreError


def _make_fake_qdrant(stored_points=None, fail_upsert=False):
    """Fake Qdrant client + models that capture calls and support filtered search."""
    captured = {"created": 0}
    if stored_points is None:
        stored_points = []

    class FakePointStruct:
        def __init__(self, id, vector, payload):
            self.id = id
            self.vector = vector
            self.payload = payload

    class FakeHit:
        def __init__(self, score, payload):
            self.score = score
            self.payload = payload

    class FakeResponse:
        def __init__(self, points):
            self.points = points

    class FakeModels:
        PointStruct = FakePointStruct

        class Distance:
            COSINE = "cosine"

        class VectorParams:
            def __init__(self, size, distance):
                self.size = size
                self.distance = distance

        class Filter:
            def __init__(self, must=None):
                self.must = must or []

        class FieldCondition:
            def __init__(self, key, match):
                self.key = key
                self.match = match

        class MatchValue:
            def __init__(self, value):
                self.value = value

    class FakeClient:
        def collection_exists(self, _name):
            return captured["created"] > 0

        def create_collection(self, collection_name, vectors_config):
            captured["created"] += 1
            captured["collection_name"] = collection_name
            captured["vector_size"] = vectors_config.size

        def upsert(self, collection_name, points, wait=True):
            if fail_upsert:
                raise RuntimeError("connection refused")
            by_id = {pt.id: pt for pt in stored_points}
            for pt in points:
                by_id[pt.id] = pt
            stored_points[:] = list(by_id.values())

        def query_points(self, collection_name, query, limit, query_filter=None):
            wanted = {condition.key: condition.match.value for condition in query_filter.must}
            hits = []
            for pt in stored_points:
                if any(pt.payload.get(key) != value for key, value in wanted.items()):
                    continue
                dot = sum(a * b for a, b in zip(query, pt.vector))
                hits.append(FakeHit(score=dot, payload=pt.payload))
            hits.sort(key=lambda h: h.score, reverse=True)
            return FakeResponse(hits[:limit])

    return FakeClient, FakeModels, captured


def _make_index(fake_client, fake_models):
    index = EmbeddingIndex(qdrant_url="http://fake:6333", collection_name="test_material_chunks")
    index._get_qdrant_client = lambda: (fake_client(), fake_models)
    return index


def test_index_upserts_one_point_per_chunk():
    stored = []
    FakeClient, FakeModels, captured = _make_fake_qdrant(stored)
    index = _make_index(FakeClient, FakeModels)

    ok = index.index("m1", ["lift", "drag"], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], owner_id="owner-1")

    assert ok is True
    assert captured["collection_name"] == "test_material_chunks"
    assert captured["vector_size"] == 3
    assert [pt.payload["chunk_index"] for pt in stored] == [0, 1]
    assert stored[0].payload == {"material_id": "m1", "chunk_index": 0, "text": "lift", "owner_id": "owner-1"}


def test_reindexing_overwrites_points_and_reuses_collection():
    stored = []
    FakeClient, FakeModels, captured = _make_fake_qdrant(stored)
    index = _make_index(FakeClient, FakeModels)

    index.index("m1", ["lift", "drag"], [[1.0, 0.0], [0.0, 1.0]])
    index.index("m1", ["lift", "drag"], [[1.0, 0.0], [0.0, 1.0]])

    assert len(stored) == 2
    assert captured["created"] == 1
    assert point_id("m1", 0) == point_id("m1", 0)
    assert point_id("m1", 0) != point_id("m2", 0)


def test_search_is_scoped_to_one_material():
    stored = []
    FakeClient, FakeModels, _ = _make_fake_qdrant(stored)
    index = _make_index(FakeClient, FakeModels)
    index.index("m1", ["lift", "drag"], [[1.0, 0.0], [0.0, 1.0]])
    index.index("m2", ["thrust"], [[1.0, 0.0]])

    results = index.search_chunks("m1", [1.0, 0.0], limit=5)

    assert [hit["payload"]["text"] for hit in results] == ["lift", "drag"]
    assert results[0]["score"] == pytest.approx(1.0)
    assert all(hit["payload"]["material_id"] == "m1" for hit in results)


def test_unconfigured_index_skips_everything():
    index = EmbeddingIndex(qdrant_url="")
    assert index.is_configured() is False
    assert index.index("m1", ["lift"], [[1.0]]) is False
    assert index.search_chunks("m1", [1.0]) == []


def test_upsert_failure_is_a_store_error():
    FakeClient, FakeModels, _ = _make_fake_qdrant(fail_upsert=True)
    index = _make_index(FakeClient, FakeModels)

    with pytest.raises(StoreError):
        index.index("m1", ["lift"], [[1.0, 0.0]])


def test_mismatched_chunks_and_vectors_are_rejected():
    FakeClient, FakeModels, _ = _make_fake_qdrant()
    index = _make_index(FakeClient, FakeModels)

    with pytest.raises(ValueError):
        index.index("m1", ["lift", "drag"], [[1.0, 0.0]])
