from identifier.logging import _add_correlation_id, _redact_pii, get_correlation_id, set_correlation_id


def test_credentials_and_emails_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "member@gym.test",
            "refresh_token": "abcdef0123456789",
            "password": "pw12345!",
            "user_id": "2f1c9a",
        },
    )

    assert event["event"] == "login_failed"
    assert event["email"] == "me***st"
    assert event["refresh_token"] == "ab***89"
    assert event["password"] == "pw***5!"
    assert event["user_id"] == "2f1c9a"


def test_short_and_non_string_values_are_left_alone():
    event = _redact_pii(None, "info", {"event": "x", "token": "abc", "email_configured": False})
    assert event["token"] == "abc"
    assert event["email_configured"] is False


def test_correlation_id_is_attached():
    cid = set_correlation_id("req-42")

    assert cid == "req-42" == get_correlation_id()
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"


def test_correlation_id_is_generated_when_missing():
    assert set_correlation_id(None)
