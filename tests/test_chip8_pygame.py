import datetime
import io

import pygame
import pytest

import chip8
import chip8_pygame
from chip8_pygame import C8Host


def keydown(key):
    return pygame.event.Event(pygame.KEYDOWN, key=key)


def keyup(key):
    return pygame.event.Event(pygame.KEYUP, key=key)


class FakeScreen:
    def __init__(self):
        self.frames = []

    def draw(self, computer, history):
        self.frames.append(list(history))
        computer.needs_draw = False


@pytest.fixture
def host():
    return C8Host(chip8.C8Computer(), FakeScreen(), cycles_per_second=500)


def test_keymapping_covers_keypad():
    assert sorted(chip8_pygame.KEYMAPPING.values()) == list(range(16))
    assert chip8_pygame.KEYMAPPING[pygame.K_x] == 0x0
    assert chip8_pygame.KEYMAPPING[pygame.K_4] == 0xC
    assert chip8_pygame.KEYMAPPING[pygame.K_v] == 0xF


def test_key_press_and_release(host):
    assert host.handle_event(keydown(pygame.K_q))
    assert host.computer.keys[0x4]
    assert host.handle_event(keyup(pygame.K_q))
    assert not host.computer.keys[0x4]


def test_unmapped_key_is_ignored(host):
    assert host.handle_event(keydown(pygame.K_p))
    assert host.computer.keys == [False] * 16


def test_key_press_resumes_wait(host):
    host.computer.load(bytes([0xF5, 0x0A]))
    host.computer.step()
    host.handle_event(keydown(pygame.K_z))
    assert not host.computer.awaiting_key
    assert host.computer.V[5] == 0xA


def test_quit_events(host):
    assert not host.handle_event(pygame.event.Event(pygame.QUIT))
    assert not host.handle_event(keydown(chip8_pygame.QUIT_KEY))


def test_pause_toggles(host):
    host.handle_event(keydown(chip8_pygame.PAUSE_KEY))
    assert host.paused
    host.handle_event(keydown(chip8_pygame.PAUSE_KEY))
    assert not host.paused


def test_timer_event_ticks_and_draws(host):
    host.computer.delay_timer = 3
    host.handle_event(pygame.event.Event(chip8_pygame.TIMER_EVENT))
    assert host.computer.delay_timer == 2
    assert len(host.screen.frames) == 1


def test_timer_event_while_paused(host):
    host.computer.delay_timer = 3
    host.paused = True
    host.handle_event(pygame.event.Event(chip8_pygame.TIMER_EVENT))
    assert host.computer.delay_timer == 3
    assert host.screen.frames == []


def test_run_cycles_paces_by_elapsed_time(host):
    # JP 0x200
    host.computer.load(bytes([0x12, 0x00]))
    start = host.last_instruction_time
    assert host.run_cycles(start + datetime.timedelta(milliseconds=10)) == 5
    assert host.num_instr == 5
    assert list(host.history) == [0x1200] * 5


def test_run_cycles_keeps_short_history(host):
    host.computer.load(bytes([0x12, 0x00]))
    start = host.last_instruction_time
    host.run_cycles(start + datetime.timedelta(seconds=1))
    assert len(host.history) == chip8_pygame.HISTORY_LENGTH


def test_run_cycles_stops_while_awaiting_key(host):
    host.computer.load(bytes([0xF0, 0x0A, 0x12, 0x02]))
    start = host.last_instruction_time
    assert host.run_cycles(start + datetime.timedelta(milliseconds=20)) == 1
    assert host.computer.PC == 0x202


def test_run_cycles_while_paused(host):
    host.computer.load(bytes([0x12, 0x00]))
    host.paused = True
    start = host.last_instruction_time
    assert host.run_cycles(start + datetime.timedelta(seconds=1)) == 0
    assert host.computer.PC == 0x200


def test_run_cycles_propagates_faults(host):
    host.computer.load(bytes([0xFF, 0xFF]))
    start = host.last_instruction_time
    with pytest.raises(chip8.InvalidOpCodeException):
        host.run_cycles(start + datetime.timedelta(milliseconds=10))


def test_write_debug_dump(host, tmp_path):
    target = tmp_path / "debug.txt"
    host.write_debug_dump(str(target))
    assert target.read_text().startswith("PC: 0x200\n")


def test_print_mem(host):
    out = io.StringIO()
    chip8_pygame.print_mem(host.computer, out)
    lines = out.getvalue().splitlines()
    assert lines[0] == "0x000 to 0x050:"
    assert lines[1] == "0xF0 0x90 0x90 0x90 0xF0 "
    assert "0x200 to 0xFFF:" in lines


def test_parse_args_defaults():
    args = chip8_pygame.parse_args(["game.ch8"])
    assert args.rom == "game.ch8"
    assert args.scale == chip8_pygame.SCALE_FACTOR
    assert args.cycles_per_second == chip8_pygame.CYCLES_PER_SECOND
    assert args.increment_i
    assert not args.shift_vy
    assert not args.logic_resets_vf
    assert not args.debug


def test_build_computer_applies_quirks():
    args = chip8_pygame.parse_args(["game.ch8", "--shift-vy", "--no-increment-i",
                                    "--logic-resets-vf", "--seed", "3"])
    c8 = chip8_pygame.build_computer(args)
    assert c8.shift_vy
    assert not c8.increment_i
    assert c8.logic_resets_vf


def test_main_reports_missing_rom(tmp_path):
    assert chip8_pygame.main([str(tmp_path / "missing.ch8")]) == 1


def test_main_rejects_oversized_rom(tmp_path):
    rom = tmp_path / "big.ch8"
    rom.write_bytes(b"\x00" * 4000)
    assert chip8_pygame.main([str(rom)]) == 1


def test_run_cycles_carries_leftover_time(host):
    host.computer.load(bytes([0x12, 0x00]))
    start = host.last_instruction_time
    executed = 0
    for k in range(1, 101):
        executed += host.run_cycles(start + datetime.timedelta(microseconds=3900 * k))
    # 390ms at 500 instructions per second
    assert executed == 195
    assert host.num_instr == 195


def test_run_cycles_does_not_burst_after_key_wait(host):
    host.computer.load(bytes([0xF0, 0x0A, 0x12, 0x02]))
    start = host.last_instruction_time
    host.run_cycles(start + datetime.timedelta(milliseconds=2))
    assert host.computer.awaiting_key
    host.run_cycles(start + datetime.timedelta(seconds=5))
    host.handle_event(keydown(pygame.K_1))
    assert host.run_cycles(start + datetime.timedelta(seconds=5, milliseconds=4)) == 2


def test_run_cycles_halts_when_pc_leaves_memory(host):
    # LD V0, 0xFF; JP V0, 0xF01 -> PC = 0x1000
    host.computer.load(bytes([0x60, 0xFF, 0xBF, 0x01]))
    start = host.last_instruction_time
    with pytest.raises(chip8.ProgramCounterException) as excinfo:
        host.run_cycles(start + datetime.timedelta(milliseconds=10))
    assert host.computer.halted is excinfo.value
    assert list(host.history) == [0x60FF, 0xBF01]


@pytest.fixture
def window(monkeypatch):
    monkeypatch.setenv("SDL_VIDEODRIVER", "dummy")
    pygame.init()
    yield pygame.display.set_mode(chip8_pygame.C8Screen.window_size(4))
    pygame.quit()


def color_at(window, x, y):
    return tuple(window.get_at((x, y)))[:3]


def test_window_size():
    assert chip8_pygame.C8Screen.window_size(4) == ((64 + 12) * 4, (32 + 4) * 4)


def test_screen_draw(window):
    screen = chip8_pygame.C8Screen(window, 4)
    c8 = chip8.C8Computer()
    c8.vram[(3 * 64) + 2] = 1
    c8.sound_timer = 5
    c8.needs_draw = True
    screen.draw(c8, [0x00E0, 0x1200])

    assert color_at(window, 2 * 4, 3 * 4) == chip8_pygame.PIXEL_ON
    assert color_at(window, 2 * 4 + 3, 3 * 4 + 3) == chip8_pygame.PIXEL_ON
    assert color_at(window, 0, 0) == chip8_pygame.PIXEL_OFF
    # sound indicator below the display
    assert color_at(window, 4, 33 * 4) == chip8_pygame.SOUND_COLOR
    # opcode history is drawn in green to the right of the display
    width, height = window.get_size()
    assert any(color_at(window, x, y)[1] > 0 and color_at(window, x, y)[0] == 0
               for x in range(65 * 4, width) for y in range(0, 32 * 4))
    assert not c8.needs_draw
    assert screen.num_renders == 1


def test_screen_draw_without_sound(window):
    screen = chip8_pygame.C8Screen(window, 4)
    c8 = chip8.C8Computer()
    screen.draw(c8, [])
    assert color_at(window, 4, 33 * 4) == chip8_pygame.PIXEL_OFF
