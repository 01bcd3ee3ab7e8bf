from pathlib import Path

import pytest
from streamlit.testing.v1 import AppTest

APP = str(Path(__file__).resolve().parents[1] / "app.py")


def button(at, label):
    return next(b for b in at.button if b.label == label)


@pytest.fixture
def app():
    at = AppTest.from_file(APP, default_timeout=60)
    at.run()
    assert not at.exception
    return at


def divine(at, question="这次项目上线顺利吗？"):
    at.text_area[0].input(question)
    button(at, "起卦 Divine").click()
    at.run()
    assert not at.exception


def test_feedback_disabled_before_first_run(app):
    assert button(app, "👍 Like").disabled
    assert button(app, "👎 Dislike").disabled
    assert app.session_state.feedback_locked is False


def test_like_locks_feedback_until_next_run(app):
    divine(app)
    assert not button(app, "👍 Like").disabled

    button(app, "👍 Like").click()
    app.run()
    assert app.session_state.feedback_locked is True
    assert button(app, "👍 Like").disabled
    assert button(app, "👎 Dislike").disabled
    assert app.session_state.history[0].feedback == 1
    assert app.session_state.library.active.model.likes_total == 1

    divine(app)
    assert app.session_state.feedback_locked is False
    assert not button(app, "👎 Dislike").disabled
    assert app.session_state.history[0].feedback == 0


def test_dislike_locks_feedback(app):
    divine(app)
    button(app, "👎 Dislike").click()
    app.run()
    assert app.session_state.feedback_locked is True
    assert button(app, "👍 Like").disabled
    assert app.session_state.history[0].feedback == -1
    assert app.session_state.library.active.model.likes_total == 0
