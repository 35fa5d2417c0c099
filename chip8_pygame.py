import argparse
import collections
import datetime
import logging
import random
import sys

import pygame

import chip8

logger = logging.getLogger(__name__)

SCALE_FACTOR = 8
PIXEL_OFF = (0, 0, 0)
PIXEL_ON = (255, 255, 255)
HISTORY_COLOR = (0, 255, 0)
SOUND_COLOR = (255, 255, 255)
# How many instructions to execute per second of wall-clock time.
CYCLES_PER_SECOND = 500
# 17ms ~= 60Hz, for the delay and sound timers and for rendering
TIMER_INTERVAL_MS = 17
HISTORY_LENGTH = 20
HISTORY_PANEL_WIDTH = 12  # in multiples of SCALE_FACTOR
SOUND_PANEL_HEIGHT = 4  # in multiples of SCALE_FACTOR
DEBUG_DUMP_FILE = "debug.txt"


# The keyboard layout for the CHIP-8 assumes:
#   1 2 3 C
#   4 5 6 D
#   7 8 9 E
#   A 0 B F
#
# We map this to the following keys on our keyboard:
#   1 2 3 4
#   Q W E R
#   A S D F
#   Z X C V

KEYMAPPING = {
    pygame.K_1: 0x01,
    pygame.K_2: 0x02,
    pygame.K_3: 0x03,
    pygame.K_4: 0x0C,
    pygame.K_q: 0x04,
    pygame.K_w: 0x05,
    pygame.K_e: 0x06,
    pygame.K_r: 0x0D,
    pygame.K_a: 0x07,
    pygame.K_s: 0x08,
    pygame.K_d: 0x09,
    pygame.K_f: 0x0E,
    pygame.K_z: 0x0A,
    pygame.K_x: 0x00,
    pygame.K_c: 0x0B,
    pygame.K_v: 0x0F
}
PAUSE_KEY = pygame.K_SPACE
QUIT_KEY = pygame.K_ESCAPE

TIMER_EVENT = pygame.USEREVENT + 1


class C8Screen:
    '''
    Renders a C8Computer's framebuffer scaled up by SCALE_FACTOR, with the recent opcode
    history in a panel to the right and a sound indicator underneath.
    '''

    def __init__(self, window, scale=SCALE_FACTOR, xsize=chip8.SCREEN_WIDTH, ysize=chip8.SCREEN_HEIGHT):
        self.window = window
        self.scale = scale
        self.xsize = xsize
        self.ysize = ysize
        self.font = pygame.font.SysFont(None, 2 * scale)
        self.num_renders = 0
        self.render_time_ps = 0

    @staticmethod
    def window_size(scale=SCALE_FACTOR):
        return ((chip8.SCREEN_WIDTH + HISTORY_PANEL_WIDTH) * scale,
                (chip8.SCREEN_HEIGHT + SOUND_PANEL_HEIGHT) * scale)

    def draw(self, computer, history):
        self.num_renders += 1
        start_time = datetime.datetime.now()
        self.window.fill(PIXEL_OFF)
        for y in range(self.ysize):
            for x in range(self.xsize):
                if computer.vram[(y * self.xsize) + x]:
                    self.window.fill(PIXEL_ON, pygame.Rect(x * self.scale, y * self.scale, self.scale, self.scale))

        for i, opcode in enumerate(history):
            text = self.font.render("0x{:04X}".format(opcode), True, HISTORY_COLOR)
            self.window.blit(text, ((self.xsize + 1) * self.scale, (i + 1) * self.scale * 3 // 2))

        if computer.sound_active:
            self.window.fill(SOUND_COLOR, pygame.Rect(self.scale, (self.ysize + 1) * self.scale,
                                                      2 * self.scale, 2 * self.scale))

        pygame.display.flip()
        computer.needs_draw = False
        self.render_time_ps += (datetime.datetime.now() - start_time).total_seconds()


class C8Host:
    '''
    Drives a C8Computer from a pygame event loop: fast instruction cycles paced by the
    wall clock, and a 60Hz timer event that ticks the timers and redraws the screen.
    '''

    def __init__(self, computer, screen=None, cycles_per_second=CYCLES_PER_SECOND):
        self.computer = computer
        self.screen = screen
        self.cycles_per_second = cycles_per_second
        self.history = collections.deque(maxlen=HISTORY_LENGTH)
        self.paused = False
        self.num_instr = 0
        self.last_instruction_time = datetime.datetime.now()

    def handle_event(self, event):
        # returns False once the loop should stop
        if event.type == pygame.QUIT:
            return False
        elif event.type == pygame.KEYDOWN:
            if event.key == QUIT_KEY:
                return False
            if event.key == PAUSE_KEY:
                self.paused = not self.paused
                logger.info("Paused" if self.paused else "Resumed")
            elif event.key in KEYMAPPING:
                self.computer.set_key(KEYMAPPING[event.key], True)
        elif event.type == pygame.KEYUP:
            if event.key in KEYMAPPING:
                self.computer.set_key(KEYMAPPING[event.key], False)
        elif event.type == TIMER_EVENT:
            if not self.paused:
                self.computer.tick_timers()
                if self.screen is not None:
                    self.screen.draw(self.computer, self.history)
        return True

    def run_cycles(self, now=None):
        '''
        Executes however many instructions are due since the last call.  Returns the
        number executed.  Faults from the computer propagate to the caller.

        last_instruction_time only moves forward by the time the executed instructions
        account for, so the fraction of a cycle left over carries into the next call.
        '''
        if now is None:
            now = datetime.datetime.now()
        if self.paused or self.computer.awaiting_key:
            self.last_instruction_time = now
            return 0
        elapsed_us = (now - self.last_instruction_time) // datetime.timedelta(microseconds=1)
        due = elapsed_us * self.cycles_per_second // 1000000
        if due <= 0:
            return 0
        executed = 0
        for _ in range(due):
            if self.computer.awaiting_key:
                break
            opcode = self.computer.step()
            self.history.append(opcode)
            executed += 1
        self.num_instr += executed
        if self.computer.awaiting_key:
            self.last_instruction_time = now
        else:
            self.last_instruction_time += datetime.timedelta(
                microseconds=due * 1000000 // self.cycles_per_second)
        return executed

    def write_debug_dump(self, filename=DEBUG_DUMP_FILE):
        with open(filename, "w") as outfile:
            self.computer.debug_dump(outfile)
        logger.info("Machine state written to %s", filename)


def print_mem(computer, outfile=sys.stdout):
    outfile.write("0x000 to 0x050:\n")
    for i in range(len(chip8.FONT)):
        outfile.write("0x{:02X} ".format(computer.RAM[i]))
        if (i + 1) % chip8.FONT_GLYPH_SIZE == 0:
            outfile.write("\n")
    outfile.write("0x200 to 0xFFF:\n")
    for i in range(chip8.PROGRAM_START, chip8.MEMORY_SIZE):
        outfile.write("0x{:02X} ".format(computer.RAM[i]))
        if (i + 1) % 8 == 0:
            outfile.write("\n")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run a CHIP-8 program.")
    parser.add_argument("rom", help="Raw CHIP-8 program image to load at 0x200.")
    parser.add_argument("--scale", type=int, default=SCALE_FACTOR,
                        help="Size of one CHIP-8 pixel on screen.")
    parser.add_argument("--cycles-per-second", dest="cycles_per_second", type=int, default=CYCLES_PER_SECOND,
                        help="Instructions executed per second.")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the Cxkk random number generator.")
    parser.add_argument("--shift-vy", dest="shift_vy", action="store_true",
                        help="8xy6/8xyE copy Vy into Vx before shifting (COSMAC VIP behavior).")
    parser.add_argument("--no-increment-i", dest="increment_i", action="store_false",
                        help="Fx55/Fx65 leave I unchanged.")
    parser.add_argument("--logic-resets-vf", dest="logic_resets_vf", action="store_true",
                        help="8xy1/8xy2/8xy3 set VF to 0 (COSMAC VIP behavior).")
    parser.add_argument("--debug", action="store_true",
                        help="Log at debug level and dump memory after loading.")
    return parser.parse_args(argv)


def build_computer(args):
    rng = random.Random(args.seed) if args.seed is not None else None
    return chip8.C8Computer(shift_vy=args.shift_vy, increment_i=args.increment_i,
                            logic_resets_vf=args.logic_resets_vf, rng=rng)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format="[%(levelname)s]:  %(message)s")

    c8 = build_computer(args)
    try:
        c8.load_rom(args.rom)
    except (OSError, chip8.ImageTooLargeException) as e:
        logger.error("Could not load %s: %s", args.rom, e)
        return 1

    if args.debug:
        logger.debug("Debug Mode")
        print_mem(c8)

    pygame.init()
    window = pygame.display.set_mode(C8Screen.window_size(args.scale))
    pygame.display.set_caption("CHIP-8")
    window.fill(PIXEL_OFF)

    host = C8Host(c8, C8Screen(window, args.scale), args.cycles_per_second)
    pygame.time.set_timer(TIMER_EVENT, TIMER_INTERVAL_MS)

    status = 0
    run = True
    start_time = datetime.datetime.now()
    while run:
        for event in pygame.event.get():
            if not host.handle_event(event):
                run = False
        if not run:
            host.write_debug_dump()
            break
        try:
            host.run_cycles()
        except chip8.C8Exception as e:
            logger.error("%s", e)
            host.write_debug_dump()
            status = 1
            run = False
        pygame.time.wait(1)

    duration = (datetime.datetime.now() - start_time).total_seconds()
    logger.info("Duration: %s sec.", duration)
    if duration > 0:
        logger.info("Performance: %s instructions per second", host.num_instr / duration)
    logger.info("Screen num renders: %s", host.screen.num_renders)
    if host.screen.num_renders:
        logger.info("Average microseconds per render: %s",
                    (1000000 * host.screen.render_time_ps) / host.screen.num_renders)

    pygame.quit()
    return status


if __name__ == "__main__":
    sys.exit(main())
