# CHIP-8 INSTRUCTION DECODER
#
# Turns a 16-bit instruction word into one of the instruction classes below.
# Decoding is pure: no machine state is read or written here.
#
# OPCODE TABLE
# https://github.com/mattmikolay/chip-8/wiki/CHIP%E2%80%908-Instruction-Set


from dataclasses import asdict, dataclass


class DecodeError(ValueError):
    """raised when an instruction word matches none of the known forms"""
    def __init__(self, opcode: int):
        super().__init__(f"Unknown opcode 0x{opcode:04x}")
        self.opcode = opcode


# ******************** INSTRUCTION SET
class Instruction:
    # format string used to render the instruction in assembly form, filled with the dataclass fields
    asm = ""

    @property
    def mnemonic(self) -> str:
        return self.asm.format(**asdict(self))


@dataclass(frozen=True)
class ClearScreen(Instruction):
    asm = "CLS"

@dataclass(frozen=True)
class Return(Instruction):
    asm = "RET"

@dataclass(frozen=True)
class Jump(Instruction):
    address: int
    asm = "JP 0x{address:03x}"

@dataclass(frozen=True)
class Call(Instruction):
    address: int
    asm = "CALL 0x{address:03x}"

@dataclass(frozen=True)
class SkipIfEqual(Instruction):
    x: int
    value: int
    asm = "SE V{x:X}, 0x{value:02x}"

@dataclass(frozen=True)
class SkipIfNotEqual(Instruction):
    x: int
    value: int
    asm = "SNE V{x:X}, 0x{value:02x}"

@dataclass(frozen=True)
class SkipIfRegistersEqual(Instruction):
    x: int
    y: int
    asm = "SE V{x:X}, V{y:X}"

@dataclass(frozen=True)
class SkipIfRegistersNotEqual(Instruction):
    x: int
    y: int
    asm = "SNE V{x:X}, V{y:X}"

@dataclass(frozen=True)
class SetRegister(Instruction):
    x: int
    value: int
    asm = "LD V{x:X}, 0x{value:02x}"

@dataclass(frozen=True)
class AddToRegister(Instruction):
    x: int
    value: int
    asm = "ADD V{x:X}, 0x{value:02x}"

@dataclass(frozen=True)
class Copy(Instruction):
    x: int
    y: int
    asm = "LD V{x:X}, V{y:X}"

@dataclass(frozen=True)
class Or(Instruction):
    x: int
    y: int
    asm = "OR V{x:X}, V{y:X}"

@dataclass(frozen=True)
class And(Instruction):
    x: int
    y: int
    asm = "AND V{x:X}, V{y:X}"

@dataclass(frozen=True)
class Xor(Instruction):
    x: int
    y: int
    asm = "XOR V{x:X}, V{y:X}"

@dataclass(frozen=True)
class AddRegisters(Instruction):
    x: int
    y: int
    asm = "ADD V{x:X}, V{y:X}"

@dataclass(frozen=True)
class SubtractYFromX(Instruction):
    x: int
    y: int
    asm = "SUB V{x:X}, V{y:X}"

@dataclass(frozen=True)
class ShiftRight(Instruction):
    x: int
    y: int
    asm = "SHR V{x:X}"

@dataclass(frozen=True)
class SubtractXFromY(Instruction):
    x: int
    y: int
    asm = "SUBN V{x:X}, V{y:X}"

@dataclass(frozen=True)
class ShiftLeft(Instruction):
    x: int
    y: int
    asm = "SHL V{x:X}"

@dataclass(frozen=True)
class SetIndex(Instruction):
    address: int
    asm = "LD I, 0x{address:03x}"

@dataclass(frozen=True)
class JumpWithOffset(Instruction):
    address: int
    asm = "JP V0, 0x{address:03x}"

@dataclass(frozen=True)
class Random(Instruction):
    x: int
    mask: int
    asm = "RND V{x:X}, 0x{mask:02x}"

@dataclass(frozen=True)
class Draw(Instruction):
    x: int
    y: int
    height: int
    asm = "DRW V{x:X}, V{y:X}, {height}"

@dataclass(frozen=True)
class SkipIfKeyPressed(Instruction):
    x: int
    asm = "SKP V{x:X}"

@dataclass(frozen=True)
class SkipIfKeyNotPressed(Instruction):
    x: int
    asm = "SKNP V{x:X}"

@dataclass(frozen=True)
class GetDelay(Instruction):
    x: int
    asm = "LD V{x:X}, DT"

@dataclass(frozen=True)
class WaitForKey(Instruction):
    x: int
    asm = "LD V{x:X}, K"

@dataclass(frozen=True)
class SetDelay(Instruction):
    x: int
    asm = "LD DT, V{x:X}"

@dataclass(frozen=True)
class SetSound(Instruction):
    x: int
    asm = "LD ST, V{x:X}"

@dataclass(frozen=True)
class AddToIndex(Instruction):
    x: int
    asm = "ADD I, V{x:X}"

@dataclass(frozen=True)
class FontCharacter(Instruction):
    x: int
    asm = "LD F, V{x:X}"

@dataclass(frozen=True)
class StoreBCD(Instruction):
    x: int
    asm = "LD B, V{x:X}"

@dataclass(frozen=True)
class StoreRegisters(Instruction):
    x: int
    asm = "LD [I], V{x:X}"

@dataclass(frozen=True)
class LoadRegisters(Instruction):
    x: int
    asm = "LD V{x:X}, [I]"


# ******************** SUB-OPCODE TABLES
# families 0x0, 0x8, 0xE and 0xF are told apart by their low nibble or low byte
SYSTEM_OPS = {
    0x00E0: ClearScreen,
    0x00EE: Return,
}

ALU_OPS = {
    0x0: Copy,
    0x1: Or,
    0x2: And,
    0x3: Xor,
    0x4: AddRegisters,
    0x5: SubtractYFromX,
    0x6: ShiftRight,
    0x7: SubtractXFromY,
    0xE: ShiftLeft,
}

KEY_OPS = {
    0x9E: SkipIfKeyPressed,
    0xA1: SkipIfKeyNotPressed,
}

MISC_OPS = {
    0x07: GetDelay,
    0x0A: WaitForKey,
    0x15: SetDelay,
    0x18: SetSound,
    0x1E: AddToIndex,
    0x29: FontCharacter,
    0x33: StoreBCD,
    0x55: StoreRegisters,
    0x65: LoadRegisters,
}


def split_nibbles(word: int):
    """split a 16-bit word in its four nibbles, most significant first"""
    return (word & 0xF000) >> 12, (word & 0x0F00) >> 8, (word & 0x00F0) >> 4, word & 0x000F


def decode(word: int) -> Instruction:
    """decode a 16-bit instruction word, raise DecodeError if it matches no known form"""
    family, x, y, n = split_nibbles(word)
    nn = word & 0x00FF
    nnn = word & 0x0FFF

    if family == 0x0:
        if word in SYSTEM_OPS:
            return SYSTEM_OPS[word]()
    elif family == 0x1:
        return Jump(nnn)
    elif family == 0x2:
        return Call(nnn)
    elif family == 0x3:
        return SkipIfEqual(x, nn)
    elif family == 0x4:
        return SkipIfNotEqual(x, nn)
    elif family == 0x5:
        if n == 0x0:
            return SkipIfRegistersEqual(x, y)
    elif family == 0x6:
        return SetRegister(x, nn)
    elif family == 0x7:
        return AddToRegister(x, nn)
    elif family == 0x8:
        if n in ALU_OPS:
            return ALU_OPS[n](x, y)
    elif family == 0x9:
        if n == 0x0:
            return SkipIfRegistersNotEqual(x, y)
    elif family == 0xA:
        return SetIndex(nnn)
    elif family == 0xB:
        return JumpWithOffset(nnn)
    elif family == 0xC:
        return Random(x, nn)
    elif family == 0xD:
        return Draw(x, y, n)
    elif family == 0xE:
        if nn in KEY_OPS:
            return KEY_OPS[nn](x)
    elif family == 0xF:
        if nn in MISC_OPS:
            return MISC_OPS[nn](x)
    raise DecodeError(word)
