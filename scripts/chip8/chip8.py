# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# pygame front end: reads the ROM, owns the window and the keyboard, paces the machine.
# every bit of emulation lives in chip8_machine and chip8_decoder.


import argparse
import logging
import sys

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_0, K_1, K_2, K_3,
    K_4, K_5, K_6, K_7,
    K_8, K_9, K_a, K_b,
    K_c, K_d, K_e, K_f,
)

from chip8_machine import (
    SCREEN_HEIGHT, SCREEN_WIDTH,
    LoadError, Machine, MachineFault,
)


logger = logging.getLogger("chip8")


# ******************** STATIC SECTION
KEY_MAPPINGS = {
    K_0: 0x0,
    K_1: 0x1,
    K_2: 0x2,
    K_3: 0x3,
    K_4: 0x4,
    K_5: 0x5,
    K_6: 0x6,
    K_7: 0x7,
    K_8: 0x8,
    K_9: 0x9,
    K_a: 0xA,
    K_b: 0xB,
    K_c: 0xC,
    K_d: 0xD,
    K_e: 0xE,
    K_f: 0xF,
}

DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False
DEFAULT_SPEED = 300     # cycles per second
SCALE = 15
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)
SOUND_MARKER = " ♪"


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 emulator")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("--speed", type=int, default=DEFAULT_SPEED, help="emulated cycles per second")
    parser.add_argument("--scale", type=int, default=SCALE, help="size in pixels of a CHIP-8 pixel")
    return parser.parse_args(argv)

def setup_logging(debug=DEBUG):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )

def read_rom(path):
    """read the whole ROM file at path, raise LoadError if it cannot be read"""
    try:
        with open(path, mode='rb') as f:
            return f.read()
    except OSError as err:
        raise LoadError(f"Cannot read the ROM at path {path}: {err.strerror}") from err


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def render(self, lit_cells):
        """repaint the whole surface from the set of (x, y) pixels that are ON"""
        self.surface.fill(self.background)
        for x, y in lit_cells:
            pygame.draw.rect(
                self.surface,
                self.foreground,
                (x * self.scale, y * self.scale, self.scale, self.scale)
            )
        pygame.display.flip()


def handle_events(chip):
    """forward keyboard events to the machine, return False when the user asked to quit"""
    for event in pygame.event.get():
        if event.type == pygame.QUIT:
            return False
        if event.type == pygame.KEYDOWN:
            if event.key == pygame.K_ESCAPE:
                return False
            if event.key in KEY_MAPPINGS:
                chip.key_press(KEY_MAPPINGS[event.key])
        elif event.type == pygame.KEYUP and event.key in KEY_MAPPINGS:
            chip.key_release(KEY_MAPPINGS[event.key])
    return True


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    setup_logging()
    try:
        chip = Machine.load(read_rom(args.file))
    except LoadError as err:
        sys.exit(str(err))
    logger.info("The ROM at path %s has been loaded successfully", args.file)
    # pygame initialization
    pygame.init()
    clock = pygame.time.Clock()
    rom_name = os.path.basename(args.file)
    pygame.display.set_caption(rom_name)
    screen = Screen(s=args.scale)
    # emulation loop
    frame = None
    beeping = False
    run = True
    while run:
        clock.tick(args.speed)
        run = handle_events(chip)
        try:
            chip.step()     # emulate one machine cycle (fetch, decode, update timers, execute)
        except MachineFault as fault:
            logger.error("THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n%s", chip)
            sys.exit(f"********** {fault}")
        # only repaint when the frame buffer changed
        current = chip.frame_buffer
        if current != frame:
            screen.render(chip.screen.lit_cells())
            frame = current
        if chip.sound_active != beeping:
            beeping = chip.sound_active
            pygame.display.set_caption(rom_name + (SOUND_MARKER if beeping else ""))
    pygame.quit()


if __name__ == "__main__":
    main()
