"""
CHIP-8 virtual machine core.

Owns all machine state (memory, registers, stack, timers, keypad, frame
buffer) and exposes load / step / set_key / clear_key to a host driver.
Timers tick once per executed instruction, and the sound timer reports a
one-shot tone edge when it runs out.
"""

import logging
import random
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

MEMORY_SIZE = 4096
PROGRAM_START = 0x200
FONT_START = 0x000
DISPLAY_WIDTH = 64
DISPLAY_HEIGHT = 32
DISPLAY_SIZE = DISPLAY_WIDTH * DISPLAY_HEIGHT
STACK_SIZE = 16
NUM_REGISTERS = 16
NUM_KEYS = 16
GLYPH_HEIGHT = 5

# Built-in 4x5 hex digit glyphs (0-F), 80 bytes at FONT_START
FONTSET = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
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
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])

# ============================================================================
# ERRORS
# ============================================================================


class Chip8Error(Exception):
    """Base class for machine faults surfaced to the driver"""


class RomTooLargeError(Chip8Error):
    """Program image does not fit between PROGRAM_START and the end of memory"""

    def __init__(self, size: int):
        self.size = size
        self.limit = MEMORY_SIZE - PROGRAM_START
        super().__init__(f"ROM too large: {size} bytes (max {self.limit})")


class UnknownOpcodeError(Chip8Error):
    """Fetched word matches no instruction encoding"""

    def __init__(self, address: int, opcode: int):
        self.address = address
        self.opcode = opcode
        super().__init__(f"Unknown opcode {opcode:04X} at {address:03X}")


class StackOverflowError(Chip8Error):
    """Call nested deeper than STACK_SIZE"""

    def __init__(self, address: int):
        self.address = address
        super().__init__(f"Stack overflow: call at {address:03X} exceeds {STACK_SIZE} levels")


class StackUnderflowError(Chip8Error):
    """Return with no active call"""

    def __init__(self, address: int):
        self.address = address
        super().__init__(f"Stack underflow: return at {address:03X} with empty stack")


class MemoryAccessError(Chip8Error):
    """Read or write outside addressable memory"""

    def __init__(self, address: int):
        self.address = address
        super().__init__(f"Memory access out of range: {address:04X}")


# ============================================================================
# MACHINE
# ============================================================================


class Machine:
    """
    CHIP-8 fetch/decode/execute engine.

    One instance owns all of its state, so several machines can run in the
    same process. Not thread-safe: the driver must serialize step(),
    set_key() and clear_key().
    """

    def __init__(self, rng: Optional[random.Random] = None,
                 on_tone: Optional[Callable[[], None]] = None):
        self.rng = rng or random.Random()
        self.on_tone = on_tone
        self.reset()

    def reset(self):
        """Reset to power-on state"""
        # Memory, glyph set at FONT_START
        self.memory = bytearray(MEMORY_SIZE)
        self.memory[FONT_START:FONT_START + len(FONTSET)] = FONTSET

        # Registers
        self.v = [0] * NUM_REGISTERS  # V0-VF
        self.i = 0
        self.pc = PROGRAM_START

        # Stack, sp counts active frames
        self.stack = [0] * STACK_SIZE
        self.sp = 0

        # Timers
        self.delay_timer = 0
        self.sound_timer = 0

        # Frame buffer, flat, indexed y * DISPLAY_WIDTH + x
        self.vram = [0] * DISPLAY_SIZE
        self.draw_flag = False

        # Input
        self.keys = [False] * NUM_KEYS
        self.waiting_for_key = False
        self.key_register = 0

        self.program_size = 0
        self.cycles = 0

    def load(self, program: bytes):
        """Replace all state with a fresh machine running program"""
        if len(program) > MEMORY_SIZE - PROGRAM_START:
            raise RomTooLargeError(len(program))

        self.reset()
        self.memory[PROGRAM_START:PROGRAM_START + len(program)] = program
        self.program_size = len(program)
        logger.debug("Loaded %d byte program at %03X", len(program), PROGRAM_START)

    # ------------------------------------------------------------------------
    # Keypad
    # ------------------------------------------------------------------------

    @staticmethod
    def _check_key(index: int):
        if not 0 <= index < NUM_KEYS:
            raise ValueError(f"Key index out of range: {index}")

    def set_key(self, index: int):
        """Mark key down; resolves a pending FX0A wait"""
        self._check_key(index)
        self.keys[index] = True

        if self.waiting_for_key:
            self.v[self.key_register] = index
            self.waiting_for_key = False

    def clear_key(self, index: int):
        """Mark key up"""
        self._check_key(index)
        self.keys[index] = False

    def is_key_down(self, index: int) -> bool:
        self._check_key(index)
        return self.keys[index]

    # ------------------------------------------------------------------------
    # Frame buffer access
    # ------------------------------------------------------------------------

    def pixel(self, x: int, y: int) -> int:
        return self.vram[y * DISPLAY_WIDTH + x]

    def framebuffer_rows(self) -> List[List[int]]:
        """Frame buffer as DISPLAY_HEIGHT rows of DISPLAY_WIDTH pixels"""
        return [self.vram[row * DISPLAY_WIDTH:(row + 1) * DISPLAY_WIDTH]
                for row in range(DISPLAY_HEIGHT)]

    # ------------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------------

    def _read(self, address: int) -> int:
        if not 0 <= address < MEMORY_SIZE:
            raise MemoryAccessError(address)
        return self.memory[address]

    def _write(self, address: int, value: int):
        if not 0 <= address < MEMORY_SIZE:
            raise MemoryAccessError(address)
        self.memory[address] = value

    # ------------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------------

    def step(self):
        """Execute one instruction cycle: fetch, decode, execute, tick timers"""
        address = self.pc
        opcode = (self._read(address) << 8) | self._read(address + 1)
        self.pc = (self.pc + 2) & 0xFFFF

        self._execute(address, opcode)
        self._tick_timers()
        self.cycles += 1

    def run(self, cycles: int):
        """Execute cycles instructions, stopping at the first fault"""
        for _ in range(cycles):
            self.step()

    def _tick_timers(self):
        if self.delay_timer > 0:
            self.delay_timer -= 1

        if self.sound_timer > 0:
            if self.sound_timer == 1:
                self._tone()
            self.sound_timer -= 1

    def _tone(self):
        if self.on_tone is not None:
            self.on_tone()
        else:
            logger.info("beep")

    def _skip_if(self, condition: bool):
        if condition:
            self.pc = (self.pc + 2) & 0xFFFF

    def _execute(self, address: int, opcode: int):
        """Decode and execute opcode fetched from address"""
        nnn = opcode & 0x0FFF
        kk = opcode & 0x00FF
        n = opcode & 0x000F
        x = (opcode >> 8) & 0x0F
        y = (opcode >> 4) & 0x0F

        first = opcode >> 12

        if opcode == 0x00E0:
            # 00E0: Clear screen
            self.vram = [0] * DISPLAY_SIZE
            self.draw_flag = True

        elif opcode == 0x00EE:
            # 00EE: Return from subroutine
            if self.sp == 0:
                raise StackUnderflowError(address)
            self.pc = self.stack[self.sp - 1]
            self.sp -= 1

        elif first == 0x1:
            # 1NNN: Jump
            self.pc = nnn

        elif first == 0x2:
            # 2NNN: Call
            if self.sp == STACK_SIZE:
                raise StackOverflowError(address)
            self.sp += 1
            self.stack[self.sp - 1] = self.pc
            self.pc = nnn

        elif first == 0x3:
            # 3XKK: Skip if VX == KK
            self._skip_if(self.v[x] == kk)

        elif first == 0x4:
            # 4XKK: Skip if VX != KK
            self._skip_if(self.v[x] != kk)

        elif first == 0x5 and n == 0:
            # 5XY0: Skip if VX == VY
            self._skip_if(self.v[x] == self.v[y])

        elif first == 0x6:
            # 6XKK: VX = KK
            self.v[x] = kk

        elif first == 0x7:
            # 7XKK: VX += KK, no carry
            self.v[x] = (self.v[x] + kk) & 0xFF

        elif first == 0x8:
            self._execute_8xxx(address, opcode, x, y, n)

        elif first == 0x9 and n == 0:
            # 9XY0: Skip if VX != VY
            self._skip_if(self.v[x] != self.v[y])

        elif first == 0xA:
            # ANNN: I = NNN
            self.i = nnn

        elif first == 0xB:
            # BNNN: Jump to NNN + V0
            self.pc = nnn + self.v[0]

        elif first == 0xC:
            # CXKK: VX = random & KK
            self.v[x] = self.rng.randint(0, 255) & kk

        elif first == 0xD:
            # DXYN: Draw sprite
            self._draw_sprite(x, y, n)

        elif first == 0xE and kk in (0x9E, 0xA1):
            self._execute_exxx(x, kk)

        elif first == 0xF:
            self._execute_fxxx(address, opcode, x, kk)

        else:
            raise UnknownOpcodeError(address, opcode)

    def _execute_8xxx(self, address: int, opcode: int, x: int, y: int, n: int):
        """Execute 8xxx opcodes (ALU operations)"""
        vx = self.v[x]
        vy = self.v[y]

        if n == 0x0:
            # 8XY0: VX = VY
            self.v[x] = vy
        elif n == 0x1:
            # 8XY1: VX |= VY
            self.v[x] = vx | vy
        elif n == 0x2:
            # 8XY2: VX &= VY
            self.v[x] = vx & vy
        elif n == 0x3:
            # 8XY3: VX ^= VY
            self.v[x] = vx ^ vy
        elif n == 0x4:
            # 8XY4: VX += VY, VF = carry
            result = vx + vy
            self.v[x] = result & 0xFF
            self.v[0xF] = 1 if result > 0xFF else 0
        elif n == 0x5:
            # 8XY5: VX -= VY, VF = 1 on underflow
            self.v[x] = (vx - vy) & 0xFF
            self.v[0xF] = 1 if vy > vx else 0
        elif n == 0x6:
            # 8XY6: VF = VX & 1, VX >>= 1 (VY unused)
            self.v[0xF] = vx & 1
            self.v[x] = vx >> 1
        elif n == 0x7:
            # 8XY7: VX = VY - VX, VF = 1 on underflow
            self.v[x] = (vy - vx) & 0xFF
            self.v[0xF] = 1 if vx > vy else 0
        elif n == 0xE:
            # 8XYE: VF = VX & 1, VX <<= 1 (VY unused)
            self.v[0xF] = vx & 1
            self.v[x] = (vx << 1) & 0xFF
        else:
            raise UnknownOpcodeError(address, opcode)

    def _execute_exxx(self, x: int, kk: int):
        """Execute EX9E / EXA1 key tests"""
        key = self.v[x]
        if key >= NUM_KEYS:
            return

        if kk == 0x9E:
            # EX9E: Skip if key VX down
            self._skip_if(self.keys[key])
        else:
            # EXA1: Skip if key VX up
            self._skip_if(not self.keys[key])

    def _execute_fxxx(self, address: int, opcode: int, x: int, kk: int):
        """Execute Fxxx opcodes"""
        vx = self.v[x]

        if kk == 0x07:
            # FX07: VX = delay timer
            self.v[x] = self.delay_timer
        elif kk == 0x0A:
            # FX0A: VX = lowest key down, else wait for the next key press
            pressed = [key for key, down in enumerate(self.keys) if down]
            if pressed:
                self.v[x] = pressed[0]
            else:
                self.waiting_for_key = True
                self.key_register = x
        elif kk == 0x15:
            # FX15: delay timer = VX
            self.delay_timer = vx
        elif kk == 0x18:
            # FX18: sound timer = VX
            self.sound_timer = vx
        elif kk == 0x1E:
            # FX1E: I += VX
            self.i = (self.i + vx) & 0xFFFF
        elif kk == 0x29:
            # FX29: I = glyph for digit VX
            self.i = FONT_START + vx * GLYPH_HEIGHT
        elif kk == 0x33:
            # FX33: BCD of VX at I, I+1, I+2
            self._write(self.i, vx // 100)
            self._write(self.i + 1, (vx // 10) % 10)
            self._write(self.i + 2, vx % 10)
        elif kk == 0x55:
            # FX55: Store V0-VX at I
            for offset in range(x + 1):
                self._write(self.i + offset, self.v[offset])
        elif kk == 0x65:
            # FX65: Load V0-VX from I
            for offset in range(x + 1):
                self.v[offset] = self._read(self.i + offset)
        else:
            raise UnknownOpcodeError(address, opcode)

    def _draw_sprite(self, x: int, y: int, n: int):
        """XOR an 8xN sprite from I onto the frame buffer at (VX, VY)"""
        px = self.v[x]
        py = self.v[y]
        self.v[0xF] = 0

        for row in range(n):
            sprite_byte = self._read(self.i + row)

            for col in range(8):
                if sprite_byte & (0x80 >> col):
                    # Wraps over the whole flat buffer, not per axis
                    index = (px + col + (py + row) * DISPLAY_WIDTH) % DISPLAY_SIZE
                    if self.vram[index]:
                        self.v[0xF] = 1  # Collision
                    self.vram[index] ^= 1

        self.draw_flag = True
