import pytest

from conftest import SCRIPT_TEXT

import app.ielts_listening.app as app_module
from app.ielts_listening.models import TaskProgress, User, db


@pytest.fixture
def client(app, pipeline, monkeypatch):
    monkeypatch.setattr(app_module, "get_content_pipeline", lambda: pipeline)
    return app.test_client()


@pytest.fixture
def logged_in(client, user):
    with client.session_transaction() as sess:
        sess["user_id"] = user.id
    return client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_requires_login(client, make_task):
    task = make_task()

    response = client.get(f"/api/task-content/{task.id}")

    assert response.status_code == 401
    assert response.get_json()["error"] == "Not authenticated"


def test_unknown_task_is_404(logged_in):
    response = logged_in.get("/api/task-content/nope")
    assert response.status_code == 404


def test_other_users_task_is_403(logged_in, pipeline):
    db.session.add(User(id="user-2"))
    db.session.add(TaskProgress(id="foreign", user_id="user-2", week_number=1, day_number=1,
                                task_title="Listening Practice"))
    db.session.commit()

    response = logged_in.get("/api/task-content/foreign")

    assert response.status_code == 403
    assert pipeline.llm.calls == []


def test_task_content_fills_and_hides_script(logged_in, make_task):
    task = make_task()

    response = logged_in.get(f"/api/task-content/{task.id}")

    assert response.status_code == 200
    body = response.get_json()
    assert "script_text" not in body
    assert body["task_title"] == "Student Housing Dialogue Practice"
    assert body["audio_url"].endswith("-australian.mp3")
    assert body["status"] == "content-ready"
    first = body["questions"][0]
    assert first["text"] == first["question"]
    assert first["type"] == "multiple-choice"
    assert first["options"][0] == {"id": "option1", "text": "Ninety", "label": "Ninety"}


def test_task_content_survives_generation_failure(logged_in, pipeline, make_task):
    pipeline.llm.script_response = None
    task = make_task()

    response = logged_in.get(f"/api/task-content/{task.id}")

    assert response.status_code == 200
    body = response.get_json()
    assert body["questions"] is None
    assert body["audio_url"] is None


def test_start_runs_fallback_then_marks_in_progress(logged_in, pipeline, make_task, polly):
    task = make_task()

    response = logged_in.patch(f"/api/task-progress/{task.id}/start")

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "in-progress"
    assert body["started_at"] is not None
    refreshed = db.session.get(TaskProgress, task.id)
    assert refreshed.script_text == SCRIPT_TEXT
    assert refreshed.questions is None
    polly.synthesize_speech.assert_not_called()


def test_start_keeps_existing_script(logged_in, pipeline, make_task):
    task = make_task(script_text="Existing.")

    response = logged_in.patch(f"/api/task-progress/{task.id}/start")

    assert response.status_code == 200
    assert pipeline.llm.calls == []


def test_complete_sets_completion_time(logged_in, make_task):
    task = make_task(status="in-progress")

    response = logged_in.patch(f"/api/task-progress/{task.id}/complete",
                               json={"progress_data": {"score": 4}})

    body = response.get_json()
    assert response.status_code == 200
    assert body["status"] == "completed"
    assert body["completed_at"] is not None
    assert body["progress_data"] == {"score": 4}


def test_generate_script_conflicts_when_script_exists(logged_in, make_task):
    task = make_task(script_text="Existing.")

    response = logged_in.post(f"/api/task/{task.id}/generate-script")

    assert response.status_code == 409


def test_generate_script(logged_in, make_task):
    task = make_task()

    response = logged_in.post(f"/api/task/{task.id}/generate-script")

    assert response.status_code == 200
    assert response.get_json()["task"]["status"] == "script-generated"


def test_generate_script_reports_failure(logged_in, pipeline, make_task):
    pipeline.llm.script_response = {"script": ""}
    task = make_task()

    response = logged_in.post(f"/api/task/{task.id}/generate-script")

    assert response.status_code == 502
    assert "No script" in response.get_json()["details"]


def test_generate_audio_requires_script(logged_in, make_task):
    task = make_task()

    response = logged_in.post(f"/api/task/{task.id}/generate-audio")

    assert response.status_code == 400


def test_generate_audio_then_conflict(logged_in, make_task):
    task = make_task(script_text=SCRIPT_TEXT, accent="American")

    created = logged_in.post(f"/api/task/{task.id}/generate-audio")
    again = logged_in.post(f"/api/task/{task.id}/generate-audio")

    assert created.status_code == 200
    assert created.get_json()["audio_url"].endswith("-american.mp3")
    assert again.status_code == 409


def test_batch_initialize_skips_duplicates(logged_in, make_task):
    make_task(week_number=3, day_number=1, task_title="Listening Practice Day 1")

    response = logged_in.post("/api/task-progress/batch-initialize", json={
        "week_number": 3,
        "tasks": [
            {"day_number": 1, "task_title": "Listening Practice Day 1"},
            {"day_number": 2, "task_title": "Listening Practice Day 2"},
            {"day_number": 3, "task_title": "Reading Practice Day 3", "skill": "reading"},
        ],
    })

    assert response.status_code == 201
    body = response.get_json()
    assert [t["day_number"] for t in body["tasks"]] == [2, 3]
    assert body["pregenerated"] == []
    assert TaskProgress.query.filter_by(week_number=3).count() == 3


def test_batch_initialize_with_pregeneration(logged_in):
    response = logged_in.post("/api/task-progress/batch-initialize", json={
        "week_number": 1,
        "pregenerate": True,
        "tasks": [{"day_number": 1, "task_title": "Listening Practice Day 1"}],
    })

    body = response.get_json()
    assert response.status_code == 201
    assert body["pregenerated"] == [body["tasks"][0]["id"]]
    assert body["tasks"][0]["status"] == "content-ready"


@pytest.mark.parametrize("payload", [{}, {"week_number": "x", "tasks": []}, {"week_number": 1, "tasks": [{}]}])
def test_batch_initialize_validates_input(logged_in, payload):
    response = logged_in.post("/api/task-progress/batch-initialize", json=payload)
    assert response.status_code == 400


def test_follow_up_inherits_scenario(logged_in, make_task):
    source = make_task(script_text=SCRIPT_TEXT, accent="Canadian", ielts_part=3,
                       topic_domain="Education", context_label="Project meeting", script_type="dialogue")

    response = logged_in.post(f"/api/task-progress/{source.id}/follow-up")

    assert response.status_code == 201
    body = response.get_json()
    assert body["id"] != source.id
    assert body["task_title"] == "Project Meeting Discussion"
    assert body["accent"] == "Canadian"
    assert body["ielts_part"] == 3
    assert body["day_number"] == source.day_number
    assert body["audio_url"] is None
    assert body["status"] == "not-started"
