import pytest

import bouncer_cli
from bouncer.challenge import challenge_symbol
from bouncer.errors import BNC_E_CONFIG_INVALID, BNC_E_ROOM_SERVICE, BouncerError, bouncer_error


def test_symbol_command_prints_symbol(capsys):
    bouncer_cli.main(["symbol", "@alice:example.org"])
    assert capsys.readouterr().out.strip() == challenge_symbol("@alice:example.org")


def test_symbol_command_rejects_bad_id():
    with pytest.raises(SystemExit) as ei:
        bouncer_cli.main(["symbol", "alice"])
    assert ei.value.code == 2


def test_invalid_config_exits_2(monkeypatch, capsys):
    for key in ("MATRIX_HOMESERVER", "MATRIX_USER_ID", "MATRIX_ACCESS_TOKEN"):
        monkeypatch.delenv(key, raising=False)
    with pytest.raises(SystemExit) as ei:
        bouncer_cli.main(["rooms"])
    assert ei.value.code == 2
    assert "MATRIX_HOMESERVER" in capsys.readouterr().err


def test_no_command_prints_help():
    with pytest.raises(SystemExit) as ei:
        bouncer_cli.main([])
    assert ei.value.code == 1


def test_startup_identity_mismatch_exits_2(capsys):
    async def startup():
        raise bouncer_error(BNC_E_CONFIG_INVALID, "mismatch", problems=["token belongs to @other:example.org"])

    with pytest.raises(SystemExit) as ei:
        bouncer_cli.run_async(startup())
    assert ei.value.code == 2
    assert "@other:example.org" in capsys.readouterr().err


def test_other_startup_errors_propagate():
    async def startup():
        raise bouncer_error(BNC_E_ROOM_SERVICE, "homeserver down", retryable=True, http_status=502)

    with pytest.raises(BouncerError) as ei:
        bouncer_cli.run_async(startup())
    assert ei.value.code == BNC_E_ROOM_SERVICE
