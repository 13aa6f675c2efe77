import pytest

from ceciproxy.socks5.request import Request
from ceciproxy.socks5.ruleset import Command, PermitCommand, permit_all, permit_none


def test_permit_command():
    rules = PermitCommand(True, False, False)

    assert rules.allow(Request(command=Command.CONNECT)) is True
    assert rules.allow(Request(command=Command.BIND)) is False
    assert rules.allow(Request(command=Command.ASSOCIATE)) is False


@pytest.mark.parametrize("command", list(Command))
def test_permit_all_allows_every_command(command):
    assert permit_all().allow(Request(command=command)) is True


@pytest.mark.parametrize("command", list(Command))
def test_permit_none_refuses_every_command(command):
    assert permit_none().allow(Request(command=command)) is False


def test_unknown_command_is_refused():
    assert permit_all().allow(Request(command=9)) is False


def test_plain_integer_command_is_matched():
    rules = PermitCommand(enable_bind=True)
    assert rules.allow(Request(command=2)) is True
    assert rules.allow(Request(command=1)) is False