"""CommandTranslator / MuteController with in-process fake workers."""

import json

import pytest

from command_translator import (
    CommandTranslator, Key, Modifiers, MouseAbsolute, MouseButton, MouseMove,
    MouseScroll, MuteController, Shortcut, Text, parse_combo,
)
from keymap import lookup_vk
from remote_common import ErrorKind, Result, UnknownKey


@pytest.fixture
def workers(recording_worker):
    return recording_worker("keyboard"), recording_worker("mouse")


@pytest.fixture
def translator(workers):
    return CommandTranslator(*workers)


class TestKeymap:
    def test_exact_then_upper_case(self):
        assert lookup_vk("Enter") == 0x0D
        assert lookup_vk("a") == 0x41
        assert lookup_vk("f5") == 0x74
        assert lookup_vk(";") == 0xBA

    def test_unknown(self):
        assert lookup_vk("NoSuchKey") is None
        assert lookup_vk("") is None


class TestParseCombo:
    def test_modifiers_and_key(self):
        key = parse_combo("ctrl+shift+t")
        assert key == Key("t", Modifiers(ctrl=True, shift=True))

    def test_aliases(self):
        assert parse_combo("Control+Option+x").modifiers == Modifiers(ctrl=True, alt=True)
        assert parse_combo("cmd+space").modifiers == Modifiers(win=True)

    def test_unknown_modifier(self):
        with pytest.raises(UnknownKey):
            parse_combo("hyper+a")

    def test_empty(self):
        with pytest.raises(UnknownKey):
            parse_combo("")


class TestTranslate:
    async def test_text_is_one_command(self, translator, workers):
        keyboard, mouse = workers
        text = 'héllo, "world"\n' * 40

        result = await translator.translate(Text(text))

        assert result.success
        assert len(keyboard.payloads) == 1
        action, _, body = keyboard.payloads[0].partition(",")
        assert action == "text"
        assert json.loads(body) == text
        assert "\n" not in keyboard.payloads[0]
        assert mouse.payloads == []

    async def test_key_with_modifiers(self, translator, workers):
        keyboard, _ = workers
        await translator.translate(Key("c", Modifiers(ctrl=True, shift=True)))
        assert keyboard.payloads == ["key,67,ctrl+shift"]

    async def test_plain_key(self, translator, workers):
        keyboard, _ = workers
        await translator.translate(Key("Enter"))
        assert keyboard.payloads == ["key,13,"]

    async def test_bare_win_key_uses_winkey(self, translator, workers):
        keyboard, _ = workers
        await translator.translate(Key("Meta"))
        await translator.translate(Key("Win", Modifiers(win=True)))
        assert keyboard.payloads == ["winkey", "winkey"]

    async def test_win_with_other_modifier_is_a_key(self, translator, workers):
        keyboard, _ = workers
        await translator.translate(Key("Win", Modifiers(shift=True)))
        assert keyboard.payloads == ["key,91,shift"]

    async def test_shortcut(self, translator, workers):
        keyboard, _ = workers
        await translator.translate(Shortcut("ctrl+alt+Delete"))
        assert keyboard.payloads == ["key,46,ctrl+alt"]

    async def test_unknown_key_never_reaches_worker(self, translator, workers):
        keyboard, _ = workers
        result = await translator.translate(Key("Hyperspace"))
        assert result.error == ErrorKind.UNKNOWN_KEY
        assert result.detail == "Hyperspace"
        assert keyboard.payloads == []

    async def test_mouse_events(self, translator, workers):
        keyboard, mouse = workers
        await translator.translate(MouseMove(3.6, -2.2))
        await translator.translate(MouseAbsolute(100, 200))
        await translator.translate(MouseButton("right"))
        await translator.translate(MouseScroll(-240))
        assert mouse.payloads == ["move,4,-2", "moveto,100,200", "right", "scroll,-240"]
        assert keyboard.payloads == []

    async def test_worker_failure_is_returned(self, recording_worker):
        keyboard = recording_worker("keyboard", Result.failure(ErrorKind.WORKER_UNAVAILABLE))
        translator = CommandTranslator(keyboard, recording_worker("mouse"))
        result = await translator.translate(Text("x"))
        assert result.error == ErrorKind.WORKER_UNAVAILABLE


class TestMuteController:
    async def test_only_edges_reach_the_worker(self, recording_worker):
        worker = recording_worker("mute")
        mute = MuteController(worker)

        await mute.set_mute(True)
        await mute.set_mute(True)
        await mute.set_mute(False)
        assert worker.payloads == ["MUTE"]
        assert mute.muted

        await mute.set_mute(False)
        assert worker.payloads == ["MUTE", "UNMUTE"]
        assert mute.ref_count == 0
        assert not mute.muted

    async def test_count_never_goes_negative(self, recording_worker):
        worker = recording_worker("mute")
        mute = MuteController(worker)
        await mute.set_mute(False)
        await mute.set_mute(False)
        assert mute.ref_count == 0
        assert worker.payloads == []

    async def test_release_several_holds(self, recording_worker):
        worker = recording_worker("mute")
        mute = MuteController(worker)
        for _ in range(3):
            await mute.set_mute(True)
        await mute.release(2)
        assert mute.ref_count == 1
        await mute.release(5)
        assert mute.ref_count == 0
        assert worker.payloads == ["MUTE", "UNMUTE"]

    async def test_failed_mute_keeps_state(self, recording_worker):
        worker = recording_worker("mute", Result.failure(ErrorKind.ACTUATOR_FAULT, "ERR"))
        mute = MuteController(worker)
        result = await mute.set_mute(True)
        assert not result
        assert not mute.muted
        assert mute.ref_count == 1

        worker.result = Result.ok()
        assert await mute.set_mute(True)
        assert worker.payloads == ["MUTE", "MUTE"]
        assert mute.muted
        assert mute.ref_count == 2

        await mute.set_mute(True)
        assert worker.payloads == ["MUTE", "MUTE"]
        await mute.release(3)
        assert worker.payloads == ["MUTE", "MUTE", "UNMUTE"]
        assert not mute.muted

    async def test_cleanup_unmutes_and_stops(self, recording_worker):
        worker = recording_worker("mute")
        mute = MuteController(worker)
        await mute.set_mute(True)
        await mute.set_mute(True)

        await mute.cleanup()

        assert worker.payloads == ["MUTE", "UNMUTE"]
        assert mute.ref_count == 0
        assert worker.stopped

    async def test_cleanup_when_never_muted(self, recording_worker):
        worker = recording_worker("mute")
        await MuteController(worker).cleanup()
        assert worker.payloads == []
        assert worker.stopped
