import pytest

from models import Review


def test_resubmitting_updates_the_existing_review(app, buyer, make_project):
    project_id = make_project()

    first = buyer.post("/reviews", json={"project_id": project_id, "rating": 3, "comment": "Decent"})
    second = buyer.post("/reviews", json={"project_id": project_id, "rating": 5, "comment": "Great after update"})

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.get_json()["review"]["id"] == first.get_json()["review"]["id"]
    with app.app_context():
        rows = Review.query.all()
        assert len(rows) == 1
        assert rows[0].rating == 5
        assert rows[0].comment == "Great after update"


def test_review_includes_user_and_feeds_project_rating(app, buyer, login_as, make_project):
    project_id = make_project()
    other = login_as("other@example.com")

    body = buyer.post("/reviews", json={"project_id": project_id, "rating": 4, "comment": "Solid"}).get_json()
    other.post("/reviews", json={"project_id": project_id, "rating": 5, "comment": "Loved it"})

    assert body["review"]["user"] == {"id": body["review"]["user"]["id"], "name": "buyer", "email": "buyer@example.com"}

    listed = app.test_client().get(f"/reviews?project_id={project_id}").get_json()["reviews"]
    assert sorted(r["rating"] for r in listed) == [4, 5]

    project = app.test_client().get(f"/projects/{project_id}").get_json()
    assert project["average_rating"] == 4.5
    assert project["review_count"] == 2


@pytest.mark.parametrize(
    "payload",
    [
        {"rating": 0, "comment": "too low"},
        {"rating": 6, "comment": "too high"},
        {"rating": 4.5, "comment": "fractional"},
        {"rating": "abc", "comment": "not a number"},
        {"rating": True, "comment": "boolean"},
        {"rating": 4, "comment": ""},
        {"rating": 4, "comment": "   "},
        {"rating": 4, "comment": "x" * 501},
        {"rating": 4, "comment": 12345},
        {"rating": 4, "comment": ["not", "text"]},
    ],
)
def test_invalid_reviews_are_rejected(app, buyer, make_project, payload):
    project_id = make_project()

    resp = buyer.post("/reviews", json={"project_id": project_id, **payload})

    assert resp.status_code == 400
    with app.app_context():
        assert Review.query.count() == 0


def test_review_edge_cases(buyer, app, make_project):
    project_id = make_project()

    assert buyer.post("/reviews", json={"project_id": 999, "rating": 4, "comment": "ghost"}).status_code == 404
    assert buyer.post("/reviews", json={"project_id": project_id, "rating": "5", "comment": "x" * 500}).status_code == 201
    assert app.test_client().post("/reviews", json={"project_id": project_id, "rating": 5, "comment": "anon"}).status_code == 401


def test_admin_review_moderation(buyer, admin, make_project):
    project_id = make_project()
    buyer.post("/reviews", json={"project_id": project_id, "rating": 2, "comment": "Meh"})
    admin.post("/reviews", json={"project_id": project_id, "rating": 5, "comment": "Great"})

    low = admin.get("/admin/reviews?rating=2").get_json()["reviews"]
    assert [r["comment"] for r in low] == ["Meh"]
    assert low[0]["project"]["id"] == project_id
    assert len(admin.get("/admin/reviews?rating=all").get_json()["reviews"]) == 2
    assert buyer.get("/admin/reviews").status_code == 403

    assert buyer.delete(f"/admin/reviews/{low[0]['id']}").status_code == 403
    assert admin.delete(f"/admin/reviews/{low[0]['id']}").status_code == 200
    assert admin.delete(f"/admin/reviews/{low[0]['id']}").status_code == 404
