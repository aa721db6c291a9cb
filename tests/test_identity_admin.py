import pytest

from identifier.service.errors import ServiceError
from identifier.storage.models import IdentityStatus
from scripts.identity_admin import build_parser, run


async def _seed(runtime):
    await runtime.identities.register("a@x.com", "pw12345!")


async def test_set_status_locks_identity(runtime, store):
    await _seed(runtime)
    args = build_parser().parse_args(["set-status", "A@x.com", "locked"])

    result = await run(args, runtime)

    assert result["status"] == "locked"
    assert store.find_by_email("a@x.com").status == IdentityStatus.LOCKED


async def test_verify_email(runtime, store):
    await _seed(runtime)
    result = await run(build_parser().parse_args(["verify-email", "a@x.com"]), runtime)

    assert result["status"] == "active"
    assert store.find_by_email("a@x.com").email_verified is True


async def test_failures_counts_window(runtime):
    await _seed(runtime)
    with pytest.raises(ServiceError):
        await runtime.identities.login("a@x.com", "wrong-password")

    result = await run(build_parser().parse_args(["failures", "a@x.com", "--minutes", "5"]), runtime)

    assert result["failures"] == 1
    assert result["minutes"] == 5


async def test_purge_expired_on_empty_store(runtime):
    result = await run(build_parser().parse_args(["purge-expired"]), runtime)
    assert result == {"refresh_removed": 0, "reset_removed": 0}


async def test_unknown_email_is_an_error(runtime):
    with pytest.raises(ServiceError):
        await run(build_parser().parse_args(["verify-email", "ghost@x.com"]), runtime)


def test_status_choices_are_validated():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["set-status", "a@x.com", "banned"])
