"""Tests for record classification (vmpilot/lib/messages.py)."""

from vmpilot.lib.messages import (
    BackendReply,
    Opaque,
    Request,
    Response,
    ScreenCheckResult,
    parse_message,
    parse_screen_check,
)


class TestParseMessage:
    def test_request(self):
        msg = parse_message({"cmd": "check_screen", "arguments": {"mustmatch": ["a"]}})
        assert msg == Request("check_screen", {"mustmatch": ["a"]})

    def test_request_without_arguments(self):
        msg = parse_message({"cmd": "status"})
        assert isinstance(msg, Request)
        assert msg.arguments == {}

    def test_request_keeps_unknown_fields(self):
        data = {"cmd": "status", "json_cmd_token": "abc"}
        msg = parse_message(data)
        assert msg.extra == {"json_cmd_token": "abc"}
        assert msg.to_wire() == {"cmd": "status", "arguments": {}, "json_cmd_token": "abc"}

    def test_response(self):
        assert parse_message({"ret": 1}) == Response(1)

    def test_response_with_none(self):
        assert parse_message({"ret": None}) == Response(None)

    def test_backend_reply(self):
        msg = parse_message({"rsp": {"x": 1}})
        assert isinstance(msg, BackendReply)
        assert msg.rsp == {"x": 1}

    def test_screen_check_result(self):
        msg = parse_message({"found": {"needle": "desktop"}, "tags": ["desktop"], "area": [1]})
        assert isinstance(msg, ScreenCheckResult)
        assert msg.found == {"needle": "desktop"}
        assert msg.tags == ["desktop"]
        assert msg.extra == {"area": [1]}

    def test_cmd_must_be_a_string(self):
        assert isinstance(parse_message({"cmd": 5}), Opaque)

    def test_unknown_shape_is_opaque(self):
        data = {"set_current_test": "boot"}
        msg = parse_message(data)
        assert msg == Opaque(data)
        assert msg.to_wire() == data


class TestScreenCheckResult:
    def test_found_is_conclusive(self):
        assert ScreenCheckResult(found={"needle": "x"}).conclusive

    def test_timeout_is_conclusive(self):
        assert ScreenCheckResult(timeout=True).conclusive

    def test_neither_is_not_conclusive(self):
        assert not ScreenCheckResult().conclusive

    def test_with_tags_keeps_fields(self):
        result = ScreenCheckResult(timeout=True, extra={"filename": "a.png"}).with_tags(["login"])
        assert result.to_wire() == {"timeout": True, "tags": ["login"], "filename": "a.png"}

    def test_parse_non_dict(self):
        assert parse_screen_check(None) == ScreenCheckResult()
        assert parse_screen_check(1) == ScreenCheckResult()
