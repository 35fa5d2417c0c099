from array import array
import logging
import random

logger = logging.getLogger(__name__)

MEMORY_SIZE = 4096
PROGRAM_START = 0x200
MAX_IMAGE_SIZE = MEMORY_SIZE - PROGRAM_START
SCREEN_WIDTH = 64
SCREEN_HEIGHT = 32
NUM_REGISTERS = 16
NUM_KEYS = 16
STACK_SIZE = 16
FONT_GLYPH_SIZE = 5

# Config options to cover differences between modern CHIP-8 interpreters and the original.
# These are the defaults; each can be overridden per C8Computer.
INCREMENT_I_FX55_FX65 = True  # True matches original; False is the common modern way
SHIFT_VY_8XY6_8XYE = False  # False is the modern way; True matches original
LOGIC_RESETS_VF = False  # True matches original COSMAC VIP

FONT = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
        0x20, 0x60, 0x20, 0x20, 0x70,  # 1
        0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
        0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
        0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
        0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
        0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
        0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
        0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
        0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
        0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
        0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
        0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
        0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
        0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
        0xF0, 0x80, 0xF0, 0x80, 0x80]  # F


class C8Exception(Exception):
    pass


class ImageTooLargeException(C8Exception):
    def __init__(self, size):
        super().__init__("program image is {} bytes; at most {} fit in memory".format(size, MAX_IMAGE_SIZE))
        self.size = size


class InvalidOpCodeException(C8Exception):
    def __init__(self, opcode, pc):
        super().__init__("unknown opcode 0x{:04X} at 0x{:03X}".format(opcode, pc))
        self.opcode = opcode
        self.pc = pc


class StackOverflowException(C8Exception):
    def __init__(self, pc):
        super().__init__("call stack overflow at 0x{:03X}".format(pc))
        self.pc = pc


class StackUnderflowException(C8Exception):
    def __init__(self, pc):
        super().__init__("return with empty call stack at 0x{:03X}".format(pc))
        self.pc = pc


class ProgramCounterException(C8Exception):
    def __init__(self, pc):
        super().__init__("program counter 0x{:X} is outside of memory".format(pc))
        self.pc = pc


class MachineHaltedException(C8Exception):
    def __init__(self, fault):
        super().__init__("machine halted after fault: {}".format(fault))
        self.fault = fault


class C8Computer:

    def __init__(self, shift_vy=SHIFT_VY_8XY6_8XYE, increment_i=INCREMENT_I_FX55_FX65,
                 logic_resets_vf=LOGIC_RESETS_VF, rng=None):
        self.shift_vy = shift_vy
        self.increment_i = increment_i
        self.logic_resets_vf = logic_resets_vf
        self.rng = rng if rng is not None else random.Random()

        # Using a list of functions to speed the lookup, vs. doing a big nested
        # if/else.  There is one instruction for each of the high-order nibbles
        # 1, 2, 3, 4, 5, 6, 7, 9, A, B, C and D.  The others (0, 8, E, F) have
        # multiple.
        self.operation_list = [
            self._0_opcodes, self._1nnn, self._2nnn, self._3xkk, self._4xkk, self._5xy0,
            self._6xkk, self._7xkk, self._8_opcodes, self._9xy0, self._Annn, self._Bnnn,
            self._Cxkk, self._Dxyn, self._E_opcodes, self._F_opcodes
        ]

        # opcodes beginning with 8 can be determined based on the least-significant
        # nibble (0..7 and E)
        self._8_operations = [
            self._8xy0, self._8xy1, self._8xy2, self._8xy3, self._8xy4, self._8xy5,
            self._8xy6, self._8xy7, None, None, None, None, None, None,
            self._8xyE, None
        ]

        # opcodes beginning with F can be determined based on the least_significant
        # byte (07, 0A, 15, 18, 1E, 29, 33, 55, and 65).  Since this is sparse,
        # will use a dictionary.
        self._F_operations = {
            0x07: self._Fx07,
            0x0A: self._Fx0A,
            0x15: self._Fx15,
            0x18: self._Fx18,
            0x1E: self._Fx1E,
            0x29: self._Fx29,
            0x33: self._Fx33,
            0x55: self._Fx55,
            0x65: self._Fx65
        }

        self.reset()

    def reset(self):
        # 4096 Bytes of RAM
        self.RAM = array('B', [0] * MEMORY_SIZE)
        # 64x32 monochrome display, row-major, one cell per pixel
        self.vram = array('B', [0] * (SCREEN_WIDTH * SCREEN_HEIGHT))
        # The 16 registers are named V0..VF
        self.V = array('B', [0] * NUM_REGISTERS)
        # Special-purpose 16-bit register; low 12 are used for an address
        self.I = 0
        self.PC = PROGRAM_START
        # Return addresses live in a fixed 16-entry stack; SP counts the entries in use
        self.stack = array('H', [0] * STACK_SIZE)
        self.SP = 0
        self.delay_timer = 0
        self.sound_timer = 0
        self.keys = [False] * NUM_KEYS  # used for the Ex9E and ExA1 instructions
        self.awaiting_key = False
        self.key_target_register = 0
        self.needs_draw = False
        self.halted = None
        self.load_font_sprites()

    def load_font_sprites(self):
        '''
        Video in the CHIP-8 is sprite-driven.  Each sprite is 8 pixels wide, and from 1-15 pixels high.
        A font representing 0..9 + A..F is required for proper operation.  Example for the character 2:

                   ****....
                   ...*....
                   ****....
                   *.......
                   ****....

        Programs find a glyph with Fx29, which computes 5 * digit, so the font has to start at 0x000.
        '''
        for i in range(len(FONT)):
            self.RAM[i] = FONT[i]

    def load(self, image):
        if isinstance(image, int):
            raise TypeError("program image must be a byte sequence, not int")
        image = bytes(image)
        if len(image) > MAX_IMAGE_SIZE:
            raise ImageTooLargeException(len(image))
        self.RAM[PROGRAM_START:PROGRAM_START + len(image)] = array('B', image)
        logger.debug("Loaded %d byte program at 0x%03X", len(image), PROGRAM_START)

    def load_rom(self, rom_file):
        with open(rom_file, "rb") as infile:
            self.load(infile.read())

    @property
    def sound_active(self):
        return self.sound_timer > 0

    def get_pixel(self, x, y):
        return self.vram[(y * SCREEN_WIDTH) + x] == 1

    def framebuffer(self):
        return [[self.vram[(y * SCREEN_WIDTH) + x] == 1 for x in range(SCREEN_WIDTH)]
                for y in range(SCREEN_HEIGHT)]

    def snapshot(self):
        '''
        Everything a program or a host can observe, as a hashable tuple.  Two computers
        with equal snapshots behave identically from here on (given the same rng).
        '''
        return (bytes(self.RAM), bytes(self.vram), bytes(self.V), self.I, self.PC,
                tuple(self.stack[:self.SP]), self.delay_timer, self.sound_timer,
                tuple(self.keys), self.awaiting_key, self.key_target_register, self.needs_draw)

    def debug_dump(self, outfile):
        outfile.write("PC: 0x{:X}\n".format(self.PC))
        if self.PC + 1 < MEMORY_SIZE:
            outfile.write("Next instr.: 0x{:04X}\n".format(self.RAM[self.PC] << 8 | self.RAM[self.PC + 1]))
        outfile.write("I: 0x{:X}\n".format(self.I))
        for i in range(NUM_REGISTERS):
            outfile.write("V{:X}: 0x{:02X}".format(i, self.V[i]))
            if i % 4 == 3:
                outfile.write('\n')
            else:
                outfile.write('\t')
        outfile.write("delay register: 0x{:X}\n".format(self.delay_timer))
        outfile.write("sound register: 0x{:X}\n".format(self.sound_timer))
        outfile.write("stack: [{}]\n".format(", ".join("0x{:X}".format(a) for a in self.stack[:self.SP])))
        if self.halted is not None:
            outfile.write("halted: {}\n".format(self.halted))
        outfile.write("\n\nRAM:\n")
        for i in range(MEMORY_SIZE):
            if i % 32 == 0:
                outfile.write("0x{:03X} - 0x{:03X}:  ".format(i, i + 31))
            outfile.write("{:02X}".format(self.RAM[i]))
            if i % 32 == 31:
                outfile.write("\n")

    def fetch(self):
        # Cannot read an instruction past the RAM boundary
        if not 0 <= self.PC < MEMORY_SIZE - 1:
            raise ProgramCounterException(self.PC)
        return self.RAM[self.PC] << 8 | self.RAM[self.PC + 1]

    def tick_timers(self):
        # Both timers freeze while Fx0A is blocking
        if self.awaiting_key:
            return
        if self.delay_timer > 0:
            self.delay_timer -= 1
        if self.sound_timer > 0:
            self.sound_timer -= 1

    def set_key(self, index, pressed):
        if not 0 <= index < NUM_KEYS:
            raise ValueError("key index must be in 0..15, got {}".format(index))
        self.keys[index] = bool(pressed)
        if pressed and self.awaiting_key:
            self.V[self.key_target_register] = index
            self.awaiting_key = False
            logger.debug("Key %X stored in V%X, resuming execution", index, self.key_target_register)

    def _0_opcodes(self, opcode, vx, vy, n, kk, nnn):
        if opcode == 0x00E0:
            # 00E0 - CLS
            # clear the screen
            for i in range(len(self.vram)):
                self.vram[i] = 0
            self.needs_draw = True
            self.PC += 2
        elif opcode == 0x00EE:
            # 00EE - RET
            # Return from a subroutine, continuing after the call
            if self.SP == 0:
                raise StackUnderflowException(self.PC)
            self.SP -= 1
            self.PC = self.stack[self.SP] + 2
        else:
            # 0nnn - SYS addr
            # Jump to a machine code routine on the original hardware; ignored here
            logger.debug("Ignoring SYS 0x%03X at 0x%03X", nnn, self.PC)
            self.PC += 2

    def _1nnn(self, opcode, vx, vy, n, kk, nnn):
        # 1nnn - JP addr
        # Jump to location nnn
        self.PC = nnn

    def _2nnn(self, opcode, vx, vy, n, kk, nnn):
        # 2nnn - CALL addr
        # Call subroutine at nnn.  The address of the call itself is pushed.
        if self.SP == STACK_SIZE:
            raise StackOverflowException(self.PC)
        self.stack[self.SP] = self.PC
        self.SP += 1
        self.PC = nnn

    def _3xkk(self, opcode, vx, vy, n, kk, nnn):
        # 3xkk - SE Vx, byte
        # Skip next instruction if Vx == kk
        self.PC += 4 if self.V[vx] == kk else 2

    def _4xkk(self, opcode, vx, vy, n, kk, nnn):
        # 4xkk - SNE Vx, byte
        # Skip next instruction if Vx != kk
        self.PC += 4 if self.V[vx] != kk else 2

    def _5xy0(self, opcode, vx, vy, n, kk, nnn):
        # 5xy0 - SE Vx, Vy
        # Skip next instruction if Vx == Vy
        if n != 0:
            raise InvalidOpCodeException(opcode, self.PC)
        self.PC += 4 if self.V[vx] == self.V[vy] else 2

    def _6xkk(self, opcode, vx, vy, n, kk, nnn):
        # 6xkk - LD Vx, byte
        # Set Vx = kk
        self.V[vx] = kk
        self.PC += 2

    def _7xkk(self, opcode, vx, vy, n, kk, nnn):
        # 7xkk - ADD Vx, byte
        # Add value in kk to vx, stores result in vx, does NOT set overflow flag
        self.V[vx] = (self.V[vx] + kk) & 0xFF
        self.PC += 2

    def _8xy0(self, vx, vy):
        # 8xy0 - LD Vx, Vy
        # Set Vx = Vy
        self.V[vx] = self.V[vy]

    def _8xy1(self, vx, vy):
        # 8xy1 - OR Vx, Vy
        # Set Vx = Vx OR Vy.
        self.V[vx] = self.V[vx] | self.V[vy]
        if self.logic_resets_vf:
            self.V[0xF] = 0

    def _8xy2(self, vx, vy):
        # 8xy2 - AND Vx, Vy
        # Set Vx = Vx AND Vy
        self.V[vx] = self.V[vx] & self.V[vy]
        if self.logic_resets_vf:
            self.V[0xF] = 0

    def _8xy3(self, vx, vy):
        # 8xy3 - XOR Vx, Vy
        # Set Vx = Vx XOR Vy
        self.V[vx] = self.V[vx] ^ self.V[vy]
        if self.logic_resets_vf:
            self.V[0xF] = 0

    def _8xy4(self, vx, vy):
        # 8xy4 - ADD Vx, Vy
        # Set Vx = Vx + Vy, set VF = carry.  Must be done in this order.
        total = self.V[vx] + self.V[vy]
        self.V[vx] = total & 0xFF
        self.V[0xF] = 1 if total > 0xFF else 0

    def _8xy5(self, vx, vy):
        # 8xy5 - SUB Vx, Vy
        # Set Vx = Vx - Vy.  Set VF = NOT borrow (VF = 1 if Vx >= Vy)
        notborrow = 1 if self.V[vx] >= self.V[vy] else 0
        self.V[vx] = (self.V[vx] - self.V[vy]) & 0xFF
        self.V[0xF] = notborrow

    def _8xy6(self, vx, vy):
        # 8xy6 - SHR Vx, Vy
        # ORIGINAL IMPLEMENTATION: copy Vy into Vx, then shift Vx right by 1.
        # MODERN IMPLEMENTATION: shift Vx right by 1 in place
        # In both, VF is set to the least significant bit of Vx before the shift
        # See: https://tobiasvl.github.io/blog/write-a-chip-8-emulator/#8xy6-and-8xye-shift
        if self.shift_vy:
            self.V[vx] = self.V[vy]
        lsb = self.V[vx] & 0x1
        self.V[vx] = self.V[vx] >> 1
        self.V[0xF] = lsb

    def _8xy7(self, vx, vy):
        # 8xy7 - SUBN Vx, Vy
        # Set Vx = Vy - Vx.  Set VF = NOT borrow (VF = 1 if Vy >= Vx)
        notborrow = 1 if self.V[vy] >= self.V[vx] else 0
        self.V[vx] = (self.V[vy] - self.V[vx]) & 0xFF
        self.V[0xF] = notborrow

    def _8xyE(self, vx, vy):
        # 8xyE - SHL Vx, Vy
        # Same ORIGINAL / MODERN split as 8xy6.
        # In both, VF is set to the most significant bit of Vx before the shift
        if self.shift_vy:
            self.V[vx] = self.V[vy]
        msb = self.V[vx] >> 7
        self.V[vx] = (self.V[vx] << 1) & 0xFF
        self.V[0xF] = msb

    def _8_opcodes(self, opcode, vx, vy, n, kk, nnn):
        operation = self._8_operations[n]
        if operation is None:
            raise InvalidOpCodeException(opcode, self.PC)
        operation(vx, vy)
        self.PC += 2

    def _9xy0(self, opcode, vx, vy, n, kk, nnn):
        # 9xy0 - SNE Vx, Vy
        # Skip next instruction if Vx != Vy
        if n != 0:
            raise InvalidOpCodeException(opcode, self.PC)
        self.PC += 4 if self.V[vx] != self.V[vy] else 2

    def _Annn(self, opcode, vx, vy, n, kk, nnn):
        # Annn - LD I, addr
        # The value of register I is set to nnn
        self.I = nnn
        self.PC += 2

    def _Bnnn(self, opcode, vx, vy, n, kk, nnn):
        # Bnnn - JP V0, addr
        # The program counter is set to nnn plus the value of V0
        self.PC = nnn + self.V[0]

    def _Cxkk(self, opcode, vx, vy, n, kk, nnn):
        # Cxkk - RND Vx, byte
        # Set Vx = random byte AND kk
        self.V[vx] = self.rng.randint(0, 0xFF) & kk
        self.PC += 2

    def _Dxyn(self, opcode, vx, vy, n, kk, nnn):
        # Dxyn - DRW Vx, Vy, nibble
        # The starting position wraps, but the sprite itself is clipped at the right and
        # bottom edges.  See https://laurencescotford.com/chip-8-on-the-cosmac-vip-drawing-sprites/
        x = self.V[vx] % SCREEN_WIDTH
        y = self.V[vy] % SCREEN_HEIGHT
        numpx = min(8, SCREEN_WIDTH - x)
        numrows = min(n, SCREEN_HEIGHT - y)
        collision = 0
        for row in range(numrows):
            val = self.RAM[(self.I + row) % MEMORY_SIZE]
            vramcell = ((y + row) * SCREEN_WIDTH) + x
            for i in range(numpx):
                if (val << i) & 0x80:
                    # 0 means do nothing, so only treat the 1 case
                    if self.vram[vramcell]:
                        collision = 1
                        self.vram[vramcell] = 0
                    else:
                        self.vram[vramcell] = 1
                vramcell += 1
        self.V[0xF] = collision
        self.needs_draw = True
        self.PC += 2

    def _E_opcodes(self, opcode, vx, vy, n, kk, nnn):
        # Only the low nibble names a key; values above 0xF alias keys 0..F
        key = self.V[vx] & 0xF
        if kk == 0x9E:
            # Ex9E - SKP Vx
            # Skip next instruction if key with value of Vx is pressed
            self.PC += 4 if self.keys[key] else 2
        elif kk == 0xA1:
            # ExA1 - SKNP Vx
            # Skip next instruction if key with value of Vx is NOT pressed
            self.PC += 2 if self.keys[key] else 4
        else:
            raise InvalidOpCodeException(opcode, self.PC)

    def _Fx07(self, vx):
        # Fx07 - LD Vx, DT
        # The value of the Delay Timer is placed into Vx.
        self.V[vx] = self.delay_timer

    def _Fx0A(self, vx):
        # Fx0A - LD, Vx, Key
        # Wait for a key press, store the value of the key in Vx.
        # The PC moves on right away; step() does nothing until set_key() sees a press.
        self.awaiting_key = True
        self.key_target_register = vx
        logger.debug("Waiting for a key press into V%X", vx)

    def _Fx15(self, vx):
        # Fx15 - LD DT, Vx
        # Set Delay Timer = Vx
        self.delay_timer = self.V[vx]

    def _Fx18(self, vx):
        # Fx18 - LD ST, Vx
        # Set Sound Timer = Vx
        self.sound_timer = self.V[vx]

    def _Fx1E(self, vx):
        # Fx1E - ADD I, Vx
        # Set I = I + Vx as a 16-bit add; VF reports the overflow
        total = self.I + self.V[vx]
        self.I = total & 0xFFFF
        self.V[0xF] = 1 if total > 0xFFFF else 0

    def _Fx29(self, vx):
        # Fx29 - LD F, Vx
        # Set I = location of sprite for digit Vx ("F" = Font)
        # each character is 5 bytes, with "0" starting at 0x00 in memory
        self.I = FONT_GLYPH_SIZE * self.V[vx]

    def _Fx33(self, vx):
        # Fx33 - LD B, Vx
        # Store binary coded decimal value of Vx in memory locations I, I+1, I+2
        val = self.V[vx]
        self.RAM[self.I % MEMORY_SIZE] = val // 100
        self.RAM[(self.I + 1) % MEMORY_SIZE] = (val // 10) % 10
        self.RAM[(self.I + 2) % MEMORY_SIZE] = val % 10

    def _Fx55(self, vx):
        # Fx55 - LD[I], Vx
        # Store registers V0 through Vx in memory starting at location I
        # On the COSMAC VIP, I was incremented during this loop.
        # See: https://laurencescotford.com/chip-8-on-the-cosmac-vip-loading-and-saving-variables/
        for i in range(vx + 1):
            self.RAM[(self.I + i) % MEMORY_SIZE] = self.V[i]
        if self.increment_i:
            self.I = (self.I + vx + 1) & 0xFFFF

    def _Fx65(self, vx):
        # Fx65 - LD Vx, [I]
        # Read values from memory starting at location I into registers V0 through Vx
        for i in range(vx + 1):
            self.V[i] = self.RAM[(self.I + i) % MEMORY_SIZE]
        if self.increment_i:
            self.I = (self.I + vx + 1) & 0xFFFF

    def _F_opcodes(self, opcode, vx, vy, n, kk, nnn):
        operation = self._F_operations.get(kk)
        if operation is None:
            raise InvalidOpCodeException(opcode, self.PC)
        operation(vx)
        self.PC += 2

    def step(self):
        '''
        Instructions have one of 6 patterns:
        All 4 bytes fixed:
            00E0, 00EE
        Operation + nnn (address)
            0nnn, 1nnn, 2nnn, Annn, Bnnn
        Operation + Vx + kk (byte)
            3xkk, 4xkk, 6xkk, 7xkk, Cxkk
        Operation + Vx + Vy + nibble-type
            5xy0, 8xy0, 8xy1, 8xy2, 8xy3,
            8xy4, 8xy5, 8xy6, 8xy7, 8xyE, 9xy0
        Operation + Vx + Vy + n (nibble)
            Dxyn
        Operation + Vx + byte-type
            Ex9E, ExA1, Fx07, Fx0A, Fx15,
            Fx18, Fx1E, Fx29, Fx33, Fx55,
            Fx65

        To minimize redundant code, calculate all the possible ways
        to parse the opcode and then later use only the ones that are needed.
        Each handler moves the PC itself, since instructions advance by 2, 4, or jump.

        Returns the opcode executed, or None while waiting on Fx0A.

        A fault halts the machine: it is raised here once, and every later call
        raises MachineHaltedException.
        '''
        if self.halted is not None:
            raise MachineHaltedException(self.halted)
        if self.awaiting_key:
            return None

        try:
            opcode = self.fetch()
            operation = opcode >> 12
            vx = opcode >> 8 & 0xF
            vy = opcode >> 4 & 0xF
            n = opcode & 0xF
            nnn = opcode & 0xFFF
            kk = opcode & 0xFF
            self.operation_list[operation](opcode, vx, vy, n, kk, nnn)
        except C8Exception as e:
            self.halted = e
            logger.debug("Halting: %s", e)
            raise
        return opcode
