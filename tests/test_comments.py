def post_comment(client, project_id, content="Does it support dark mode?", parent_id=None):
    payload = {"project_id": project_id, "content": content}
    if parent_id is not None:
        payload["parent_id"] = parent_id
    return client.post("/comments", json=payload)


def test_comment_threads_one_level_deep(app, buyer, admin, make_project):
    project_id = make_project()
    other_project = make_project("Other")

    root = post_comment(buyer, project_id)
    assert root.status_code == 201
    root_id = root.get_json()["comment"]["id"]

    reply = post_comment(admin, project_id, "Yes, out of the box.", parent_id=root_id)
    assert reply.status_code == 201
    assert reply.get_json()["comment"]["parent_id"] == root_id

    nested = post_comment(buyer, project_id, "Thanks!", parent_id=reply.get_json()["comment"]["id"])
    assert nested.status_code == 400
    assert post_comment(buyer, other_project, "wrong thread", parent_id=root_id).status_code == 400

    listed = app.test_client().get(f"/comments?project_id={project_id}").get_json()["comments"]
    assert len(listed) == 2
    assert all(c["user"]["name"] in ("buyer", "admin") for c in listed)


def test_comment_validation(app, buyer, make_project):
    project_id = make_project()
    assert post_comment(buyer, project_id, "   ").status_code == 400
    numeric = post_comment(buyer, project_id, 42)
    assert numeric.status_code == 400
    assert numeric.get_json()["error"] == "content must be a string"
    assert post_comment(buyer, 999).status_code == 404
    assert post_comment(app.test_client(), project_id).status_code == 401


def test_unread_notifications(app, buyer, admin, make_project):
    project_id = make_project()
    first = post_comment(buyer, project_id, "one").get_json()["comment"]
    post_comment(buyer, project_id, "two")
    post_comment(buyer, project_id, "three")
    client = app.test_client()

    assert client.get("/comments?unread=true&count=true").get_json() == {"count": 3}

    assert buyer.patch("/admin/comments", json={"id": first["id"], "is_read": True}).status_code == 403
    marked = admin.patch("/admin/comments", json={"id": first["id"], "is_read": True})
    assert marked.get_json()["comment"]["is_read"] is True
    assert client.get("/comments?unread=true&count=true").get_json() == {"count": 2}

    assert admin.patch("/admin/comments", json={"id": first["id"]}).status_code == 400
    assert admin.patch("/admin/comments", json={"id": 999, "is_read": True}).status_code == 404

    everything = admin.patch("/admin/comments", json={"mark_all_read": True}).get_json()
    assert everything["modified_count"] == 2
    assert client.get("/comments?unread=true&count=true").get_json() == {"count": 0}
