import pytest


def _squares(n):
    return [{"id": f"sq{i}", "aspect_ratio": 1.0} for i in range(n)]


def test_masonry_layout_picks_two_columns_for_four_squares(client):
    r = client.post('/api/layout/masonry', json={"canvas_width": 800, "canvas_height": 800, "images": _squares(4)})
    assert r.status_code == 200
    body = r.json()
    assert body["actual_column_count"] == 2
    assert [p["id"] for p in body["placements"]] == ["sq0", "sq1", "sq2", "sq3"]
    assert body["fill_rate"] > 0.95
    assert "X-Request-ID" in r.headers


def test_masonry_layout_empty_images(client):
    r = client.post('/api/layout/masonry', json={"canvas_width": 800, "canvas_height": 600, "images": []})
    assert r.status_code == 200
    assert r.json() == {"placements": [], "actual_column_count": 0, "total_height": 0.0, "fill_rate": 0.0}


def test_masonry_layout_rejects_bad_aspect_ratio(client):
    images = [{"id": "ok", "aspect_ratio": 1.0}, {"id": "bad", "aspect_ratio": -2}]
    r = client.post('/api/layout/masonry', json={"canvas_width": 800, "canvas_height": 600, "images": images})
    assert r.status_code == 422
    assert "bad" in r.json()["detail"]


def test_masonry_layout_rejects_cramped_canvas(client):
    payload = {"canvas_width": 100, "canvas_height": 100, "images": _squares(2), "padding": 60, "column_count": 1}
    r = client.post('/api/layout/masonry', json=payload)
    assert r.status_code == 422


def test_masonry_layout_presets(client):
    payload = {"canvas_width": 600, "canvas_height": 400, "images": _squares(3), "gap": 40, "padding": 40}
    tight = client.post('/api/layout/masonry?preset=tight', json=payload).json()
    spaced = client.post('/api/layout/masonry?preset=spaced', json=payload).json()
    assert tight["placements"][0]["x"] == 0
    assert min(p["x"] for p in spaced["placements"]) == pytest.approx(5)


def test_masonry_layout_pinned_columns(client):
    payload = {"canvas_width": 600, "canvas_height": 600, "images": _squares(2), "column_count": 3}
    body = client.post('/api/layout/masonry', json=payload).json()
    assert body["actual_column_count"] == 3
    assert len(body["placements"]) == 2


def test_masonry_layout_image_limit(client, monkeypatch):
    import server

    monkeypatch.setattr(server, "MAX_LAYOUT_IMAGES", 3)
    r = client.post('/api/layout/masonry', json={"canvas_width": 800, "canvas_height": 600, "images": _squares(4)})
    assert r.status_code == 400


def test_analyze_reports_every_candidate(client):
    payload = {"canvas_width": 800, "canvas_height": 800, "images": _squares(4)}
    r = client.post('/api/layout/masonry/analyze', json=payload)
    assert r.status_code == 200
    analysis = r.json()["analysis"]
    candidates = analysis["candidates"]
    assert [c["column_count"] for c in candidates] == [1, 2, 3, 4]
    assert sum(1 for c in candidates if c["selected"]) == 1
    assert analysis["selected_column_count"] == 2
    assert analysis["legacy_column_count"] == 2
    assert "layout" not in candidates[0]


def test_preview_returns_png(client):
    payload = {"canvas_width": 300, "canvas_height": 200, "images": _squares(3)}
    r = client.post('/api/layout/masonry/preview', json=payload)
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content.startswith(b"\x89PNG")
    assert int(r.headers["X-Column-Count"]) >= 1


def test_page_bounds_endpoint(client):
    r = client.get('/api/layout/page-bounds', params={"spread_width": 1000, "spread_height": 500, "target": "right"})
    assert r.status_code == 200
    assert r.json() == {"x": 500.0, "y": 0.0, "width": 500.0, "height": 500.0}

    r = client.get('/api/layout/page-bounds', params={"spread_width": 0, "spread_height": 500})
    assert r.status_code == 422


def test_page_membership_endpoint(client):
    objects = [
        {"id": "a", "x": 0, "y": 0, "width": 200, "height": 100},
        {"id": "b", "x": 600, "y": 0, "width": 200, "height": 100},
    ]
    r = client.post('/api/layout/page-membership', json={"spread_width": 1000, "target": "left", "objects": objects})
    assert r.status_code == 200
    assert r.json() == {"target": "left", "ids": ["a"]}


def test_arrange_canvas_endpoint(client):
    objects = [
        {"id": "p1", "type": "image", "x": 0, "y": 0, "width": 400, "height": 300},
        {"id": "t1", "type": "text", "x": 0, "y": 0, "width": 100, "height": 20},
        {"id": "p2", "type": "image", "x": 0, "y": 0, "width": 300, "height": 400},
    ]
    r = client.post('/api/arrange/canvas', json={"canvas_width": 1000, "canvas_height": 800, "objects": objects})
    assert r.status_code == 200
    body = r.json()
    assert body["can_arrange"] is True
    assert [u["id"] for u in body["updates"]] == ["p1", "p2"]


def test_arrange_canvas_endpoint_rejects_oversized_bleed(client):
    objects = [{"id": "p1", "width": 400, "height": 300}]
    payload = {"canvas_width": 100, "canvas_height": 100, "bleed_px": 80, "objects": objects}
    r = client.post('/api/arrange/canvas', json=payload)
    assert r.status_code == 422


def test_arrange_photobook_endpoint(client):
    objects = [
        {"id": "l", "x": 100, "y": 0, "width": 200, "height": 200},
        {"id": "r", "x": 1100, "y": 0, "width": 200, "height": 200},
    ]
    payload = {"spread_width": 2000, "spread_height": 1000, "page_target": "right", "objects": objects}
    r = client.post('/api/arrange/photobook', json=payload)
    assert r.status_code == 200
    updates = r.json()["updates"]
    assert [u["id"] for u in updates] == ["r"]
    assert updates[0]["x"] >= 1000


def test_root_lists_endpoints(client):
    r = client.get('/')
    assert r.status_code == 200
    assert "masonry_layout" in r.json()["endpoints"]


def test_health_and_metrics(client):
    client.post('/api/layout/masonry', json={"canvas_width": 500, "canvas_height": 500, "images": _squares(2)})

    health = client.get('/health')
    assert health.status_code == 200
    assert health.json()["checks"]["dependencies"]["redis_connected"] is True

    metrics = client.get('/metrics')
    assert metrics.status_code == 200
    assert b"layout_solve_seconds" in metrics.content
    assert b"layout_selected_columns" in metrics.content


def test_rate_limit(client, monkeypatch):
    import server

    monkeypatch.setattr(server, "RATE_LIMIT_REQUESTS", 2)
    assert client.get('/').status_code == 200
    assert client.get('/').status_code == 200
    r = client.get('/')
    assert r.status_code == 429
    assert "request_id" in r.json()


def test_masonry_layout_rejects_overflowing_aspect_ratio(client):
    images = [{"id": "a", "aspect_ratio": 1.0}, {"id": "sliver", "aspect_ratio": 1e-306}]
    r = client.post('/api/layout/masonry', json={"canvas_width": 1000, "canvas_height": 1000, "images": images})
    assert r.status_code == 422
    assert "sliver" in r.json()["detail"]


def test_preview_caps_rounded_pixel_size(client, monkeypatch):
    import server

    monkeypatch.setattr(server, "MAX_CANVAS_PIXELS", 1000)
    payload = {"canvas_width": 20000, "canvas_height": 0.04, "images": _squares(1), "gap": 0, "padding": 0}
    r = client.post('/api/layout/masonry/preview', json=payload)
    assert r.status_code == 400


def test_analyze_ignores_pinned_column_count(client):
    payload = {"canvas_width": 800, "canvas_height": 800, "images": _squares(4), "column_count": 0}
    r = client.post('/api/layout/masonry/analyze', json=payload)
    assert r.status_code == 200
    assert r.json()["analysis"]["selected_column_count"] == 2
