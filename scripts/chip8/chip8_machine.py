# CHIP-8 VIRTUAL MACHINE
#
# Owns the whole emulator state (memory, registers, stack, timers, frame buffer, input latch)
# and the engine executing decoded instructions against it.
#
# COMPATIBILITY QUIRKS TABLE
# https://games.gulrak.net/cadmium/chip8-opcode-table.html#quirk6
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite


import logging
import random
from functools import wraps
from typing import Optional

import chip8_decoder as ops
from chip8_decoder import DecodeError


logger = logging.getLogger(__name__)


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
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

MEMORY_SIZE = 4096
FONT_START_ADDRESS = 0x050
FONT_CHAR_SIZE = 5
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_LIMIT = 16
SCREEN_WIDTH = 64
SCREEN_HEIGHT = 32
SPRITE_WIDTH = 8
VF = 0xF


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every error raised by the emulator"""

class LoadError(Chip8Error):
    """the program image cannot be loaded, the machine is not built"""

class MachineFault(Chip8Error):
    """
    the running program did something the machine cannot carry on from
    pc is the address of the instruction being executed, filled in by Machine.step when known
    """
    def __init__(self, message: str, pc: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.pc = pc

    def __str__(self):
        if self.pc is None:
            return self.message
        return f"{self.message} (instruction at 0x{self.pc:04x})"

class UnknownOpcodeError(MachineFault):
    def __init__(self, opcode: int, pc: Optional[int] = None):
        super().__init__(f"Unknown opcode 0x{opcode:04x}", pc)
        self.opcode = opcode

class StackUnderflowError(MachineFault):
    def __init__(self, pc: Optional[int] = None):
        super().__init__("Return with an empty call stack", pc)

class StackOverflowError(MachineFault):
    def __init__(self, pc: Optional[int] = None):
        super().__init__(f"The CHIP-8 stack can contain at most {STACK_LIMIT} addresses. Limit exceeded", pc)

class MemoryAccessError(MachineFault):
    def __init__(self, address: int, pc: Optional[int] = None):
        super().__init__(f"Memory access out of range at 0x{address:04x}", pc)
        self.address = address


# ******************** UTILITIES SECTION
def traced(fn):
    """decorator to log the ASM of the instruction being executed"""
    @wraps(fn)
    def wrapper_fn(self, instruction):
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("mem_addr: 0x%04x    opcode: 0x%04x    instruction: %s",
                         self.instruction_address, self.opcode, instruction.mnemonic)
        return fn(self, instruction)
    return wrapper_fn


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self):
        self.addr_list = []

    def __len__(self):
        return len(self.addr_list)

    def __repr__(self):
        return f"Stack({[hex(a) for a in self.addr_list]})"

    def append(self, address):
        if len(self.addr_list) >= STACK_LIMIT:
            raise StackOverflowError()
        self.addr_list.append(address)

    def pop(self):
        if not self.addr_list:
            raise StackUnderflowError()
        return self.addr_list.pop()

# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    """
    every access is checked against the 4KB bound: nothing wraps around or gets clamped,
    an out of range address raises MemoryAccessError
    slices are supported for block copies but can never grow or shrink the memory
    """
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = bytes(C8_FONTS)

    def __len__(self):
        return MEMORY_SIZE

    @staticmethod
    def _check(address):
        if not 0 <= address < MEMORY_SIZE:
            raise MemoryAccessError(address)

    def _check_slice(self, key):
        if key.step is not None or key.start is None or key.stop is None:
            raise TypeError("Memory slices need an explicit start and stop and no step")
        self._check(key.start)
        if key.stop > key.start:
            self._check(key.stop - 1)
        return key.stop - key.start

    def __getitem__(self, key):
        if isinstance(key, slice):
            self._check_slice(key)
            return bytes(self.inner[key])
        self._check(key)
        return self.inner[key]

    def __setitem__(self, key, value):
        if isinstance(key, slice):
            length = self._check_slice(key)
            value = bytes(value)
            if len(value) != max(length, 0):
                raise ValueError(f"Cannot write {len(value)} bytes into a {length} bytes memory block")
            self.inner[key] = value
            return
        self._check(key)
        self.inner[key] = value & 0xFF

    def load_program(self, image):
        """copy the program image in memory starting at ROM_START_ADDRESS"""
        image = bytes(image)
        if len(image) > MAX_ROM_SIZE:
            raise LoadError(f"The program image is {len(image)} bytes long, at most {MAX_ROM_SIZE} bytes fit in memory")
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(image)] = image


# ******************** DISPLAY SECTION
class FrameBuffer:
    """64x32 monochrome grid, row major: rows[y][x] is True when the pixel is ON"""
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.rows = [[False] * w for _ in range(h)]

    def read_pixel(self, x, y) -> bool:
        return self.rows[y][x]

    def flip_pixel(self, x, y) -> bool:
        """XOR the pixel with 1, return True if it was ON and got turned OFF"""
        was_on = self.rows[y][x]
        self.rows[y][x] = not was_on
        return was_on

    def clear(self):
        for row in self.rows:
            row[:] = [False] * self.w

    def view(self):
        """read-only snapshot of the grid"""
        return tuple(tuple(row) for row in self.rows)

    def lit_cells(self):
        return {(x, y) for y, row in enumerate(self.rows) for x, lit in enumerate(row) if lit}


# ******************** CPU SECTION
class Machine:
    def __init__(self, rng: Optional[random.Random] = None):
        self.mem = Memory()
        self.stack = Stack()
        self.screen = FrameBuffer()
        self.v_regs = [0] * 16
        self.pc = ROM_START_ADDRESS
        self.idx = 0        # I register, used to address memory
        self.dt = 0         # delay timer, active when non-zero
        self.st = 0         # sound timer, the machine beeps while it is non-zero
        self.key = None     # single slot input latch, the hex code of the pressed key or None
        self.rng = rng if rng is not None else random.Random()
        self.opcode = 0
        self.instruction_address = ROM_START_ADDRESS
        self.instructions = {
            ops.ClearScreen: self._clear_screen,
            ops.Return: self._return,
            ops.Jump: self._jump,
            ops.Call: self._call_addr,
            ops.SkipIfEqual: self._skip_if_eq,
            ops.SkipIfNotEqual: self._skip_if_not_eq,
            ops.SkipIfRegistersEqual: self._skip_if_eq_regs,
            ops.SkipIfRegistersNotEqual: self._skip_if_not_eq_regs,
            ops.SetRegister: self._set_vx,
            ops.AddToRegister: self._add_to_vx,
            ops.Copy: self._set_vx_to_vy,
            ops.Or: self._set_vx_or_vy,
            ops.And: self._set_vx_and_vy,
            ops.Xor: self._set_vx_xor_vy,
            ops.AddRegisters: self._add_vx_vy,
            ops.SubtractYFromX: self._sub_vx_vy,
            ops.ShiftRight: self._shr,
            ops.SubtractXFromY: self._subn_vx_vy,
            ops.ShiftLeft: self._shl,
            ops.SetIndex: self._set_idx,
            ops.JumpWithOffset: self._jump_plus,
            ops.Random: self._random_byte_and,
            ops.Draw: self._to_screen,
            ops.SkipIfKeyPressed: self._skip_if_pressed,
            ops.SkipIfKeyNotPressed: self._skip_if_not_pressed,
            ops.GetDelay: self._set_vx_dt,
            ops.WaitForKey: self._wait_keypress,
            ops.SetDelay: self._set_dt_vx,
            ops.SetSound: self._set_st,
            ops.AddToIndex: self._add_to_idx,
            ops.FontCharacter: self._select_char,
            ops.StoreBCD: self._bcd_repr,
            ops.StoreRegisters: self._store_vregs,
            ops.LoadRegisters: self._load_vregs,
        }

    @classmethod
    def load(cls, image, rng: Optional[random.Random] = None) -> "Machine":
        """build a machine with the program image loaded at ROM_START_ADDRESS, raise LoadError if it does not fit"""
        machine = cls(rng)
        machine.mem.load_program(image)
        logger.info("Loaded a %d bytes program image", len(image))
        return machine

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK:{self.stack}"
        timers = f"DT:{self.dt} | ST:{self.st} | KEY:{self.key}"
        return f"{registers}\n{stack}\n{timers}"

    # ********** CALLER INTERFACE
    @property
    def frame_buffer(self):
        return self.screen.view()

    @property
    def sound_active(self) -> bool:
        return self.st > 0

    def key_press(self, code: int):
        self._check_key(code)
        self.key = code

    def key_release(self, code: int):
        """clear the latch whatever the released key: only one key at a time is tracked"""
        self._check_key(code)
        self.key = None

    @staticmethod
    def _check_key(code):
        if not 0x0 <= code <= 0xF:
            raise ValueError(f"Key code must be in the 0x0-0xF range, got {code!r}")

    # ********** CYCLE
    def fetch(self) -> int:
        """read the two bytes at PC (big endian) and move PC to the next instruction"""
        opcode = self.mem[self.pc] << 8 | self.mem[self.pc + 1]
        self._goto_next_instruction()
        return opcode

    def tick_timers(self):
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1

    def step(self):
        """emulate one machine cycle: fetch, decode, update timers and execute"""
        self.instruction_address = self.pc
        try:
            self.opcode = self.fetch()
            try:
                instruction = ops.decode(self.opcode)
            except DecodeError as err:
                raise UnknownOpcodeError(self.opcode) from err
            self.tick_timers()
            self.execute(instruction)
        except MachineFault as fault:
            if fault.pc is None:
                fault.pc = self.instruction_address
            logger.info("Machine fault: %s", fault)
            raise

    @traced
    def execute(self, instruction):
        self.instructions[type(instruction)](instruction)

    def _goto_next_instruction(self):
        self.pc += 0x2

    # ********** FLOW CONTROL
    def _clear_screen(self, ins):
        self.screen.clear()

    def _return(self, ins):
        """return from a subroutine"""
        self.pc = self.stack.pop()

    def _jump(self, ins):
        self.pc = ins.address

    def _call_addr(self, ins):
        self.stack.append(self.pc)
        self.pc = ins.address

    def _jump_plus(self, ins):
        self.pc = ins.address + self.v_regs[0x0]

    def _skip_if_eq(self, ins):
        if self.v_regs[ins.x] == ins.value:
            self._goto_next_instruction()

    def _skip_if_not_eq(self, ins):
        if self.v_regs[ins.x] != ins.value:
            self._goto_next_instruction()

    def _skip_if_eq_regs(self, ins):
        if self.v_regs[ins.x] == self.v_regs[ins.y]:
            self._goto_next_instruction()

    def _skip_if_not_eq_regs(self, ins):
        if self.v_regs[ins.x] != self.v_regs[ins.y]:
            self._goto_next_instruction()

    # ********** REGISTERS
    def _set_vx(self, ins):
        """set the value of one of the 16 variable registers, Vx"""
        self.v_regs[ins.x] = ins.value

    def _add_to_vx(self, ins):
        """add to the value already present in Vx, VF is left untouched"""
        self.v_regs[ins.x] = (self.v_regs[ins.x] + ins.value) & 0xFF

    def _set_vx_to_vy(self, ins):
        self.v_regs[ins.x] = self.v_regs[ins.y]

    def _set_vx_or_vy(self, ins):
        self.v_regs[ins.x] |= self.v_regs[ins.y]

    def _set_vx_and_vy(self, ins):
        self.v_regs[ins.x] &= self.v_regs[ins.y]

    def _set_vx_xor_vy(self, ins):
        self.v_regs[ins.x] ^= self.v_regs[ins.y]

    # the flag is always written after the result, so VF holds the flag when x is 0xF
    def _add_vx_vy(self, ins):
        """set the value of Vx to Vx + Vy, VF = carry"""
        total = self.v_regs[ins.x] + self.v_regs[ins.y]
        self.v_regs[ins.x] = total & 0xFF
        self.v_regs[VF] = 1 if total > 0xFF else 0

    def _sub_vx_vy(self, ins):
        """set the value of Vx to Vx - Vy, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vx - vy) & 0xFF
        self.v_regs[VF] = 1 if vx >= vy else 0

    def _subn_vx_vy(self, ins):
        """set the value of Vx to Vy - Vx, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vy - vx) & 0xFF
        self.v_regs[VF] = 1 if vy >= vx else 0

    def _shr(self, ins):
        """shift Vx right in place, VF = the bit shifted out"""
        vx = self.v_regs[ins.x]
        self.v_regs[ins.x] = vx >> 1
        self.v_regs[VF] = vx & 0x1

    def _shl(self, ins):
        """shift Vx left in place, VF = the bit shifted out"""
        vx = self.v_regs[ins.x]
        self.v_regs[ins.x] = (vx << 1) & 0xFF
        self.v_regs[VF] = (vx & 0x80) >> 7

    def _random_byte_and(self, ins):
        self.v_regs[ins.x] = self.rng.randint(0, 255) & ins.mask

    # ********** INDEX REGISTER AND MEMORY
    def _set_idx(self, ins):
        self.idx = ins.address

    def _add_to_idx(self, ins):
        """set I = I + Vx, no overflow flag"""
        self.idx = (self.idx + self.v_regs[ins.x]) & 0xFFFF

    def _select_char(self, ins):
        """set I to the location of the font sprite for the digit in the low nibble of Vx"""
        self.idx = FONT_START_ADDRESS + FONT_CHAR_SIZE * (self.v_regs[ins.x] & 0xF)

    def _bcd_repr(self, ins):
        """store the hundreds digit of Vx at I, the tens digit at I+1, the ones digit at I+2"""
        value = self.v_regs[ins.x]
        self.mem[self.idx:self.idx+3] = (value // 100, value // 10 % 10, value % 10)

    def _store_vregs(self, ins):
        """store registers V0 through Vx (included) in memory starting at location I"""
        self.mem[self.idx:self.idx+ins.x+1] = self.v_regs[:ins.x+1]

    def _load_vregs(self, ins):
        """read registers V0 through Vx (included) from memory starting at location I"""
        self.v_regs[:ins.x+1] = list(self.mem[self.idx:self.idx+ins.x+1])

    # ********** DISPLAY
    def _to_screen(self, ins):
        """
        display an n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision
        the starting point wraps around the screen but the sprite itself is clipped at the edges
        """
        x = self.v_regs[ins.x] % self.screen.w
        y = self.v_regs[ins.y] % self.screen.h
        collision = False
        for row in range(ins.height):
            y_coordinate = y + row
            if y_coordinate >= self.screen.h:
                break
            sprite_byte = self.mem[self.idx + row]
            for col in range(SPRITE_WIDTH):
                x_coordinate = x + col
                if x_coordinate >= self.screen.w:
                    break
                # sprites are XORed onto the existing screen, a pixel turned OFF is a collision
                if sprite_byte & (0x80 >> col) and self.screen.flip_pixel(x_coordinate, y_coordinate):
                    collision = True
        self.v_regs[VF] = 1 if collision else 0

    # ********** TIMERS AND KEYPAD
    def _set_vx_dt(self, ins):
        self.v_regs[ins.x] = self.dt

    def _set_dt_vx(self, ins):
        self.dt = self.v_regs[ins.x]

    def _set_st(self, ins):
        self.st = self.v_regs[ins.x]

    def _skip_if_pressed(self, ins):
        """skip the following instruction if the key stored in the low nibble of Vx is pressed"""
        if self.key == self.v_regs[ins.x] & 0xF:
            self._goto_next_instruction()

    def _skip_if_not_pressed(self, ins):
        """skip the following instruction if the key stored in the low nibble of Vx is NOT pressed"""
        if self.key != self.v_regs[ins.x] & 0xF:
            self._goto_next_instruction()

    def _wait_keypress(self, ins):
        """wait for a key press and store its value in Vx"""
        if self.key is None:
            self.pc -= 0x2      # stay on the same instruction until a key is pressed
        else:
            self.v_regs[ins.x] = self.key
