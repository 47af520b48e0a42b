#!/usr/bin/env python3
"""
CHIP-8 desktop front end.
Tkinter window and renderer, pygame tone player and game-controller input,
driving a chip8_machine.Machine at a fixed instruction cadence.
"""

import argparse
import array
import logging
import os
import threading
import time
import tkinter as tk
from tkinter import filedialog
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import pygame

from chip8_machine import (
    DISPLAY_HEIGHT,
    DISPLAY_WIDTH,
    Chip8Error,
    Machine,
)

logger = logging.getLogger(__name__)

STATUS_BAR_HEIGHT = 32
STATUS_BG = "#2A2A2A"
STATUS_FG = "#888888"

# Host key -> CHIP-8 pad index
#  1 2 3 4      0 1 2 3
#  Q W E R  →   4 5 6 7
#  A S D F      8 9 A B
#  Z X C V      C D E F
KEYBOARD_MAP = {
    '1': 0x0, '2': 0x1, '3': 0x2, '4': 0x3,
    'q': 0x4, 'w': 0x5, 'e': 0x6, 'r': 0x7,
    'a': 0x8, 's': 0x9, 'd': 0xA, 'f': 0xB,
    'z': 0xC, 'x': 0xD, 'c': 0xE, 'v': 0xF,
}


@dataclass
class FrontendConfig:
    """Host-side settings; the machine itself has none"""
    scale: int = 12
    cycles_per_frame: int = 1     # One instruction per frame keeps timers at 60Hz
    target_fps: int = 60
    max_speed: int = 8
    pixel_on: str = "#FFFFFF"
    pixel_off: str = "#000000"
    tone_frequency: int = 440
    tone_duration: float = 0.1
    mute: bool = False
    controller: bool = True


def load_rom_file(path: str) -> bytes:
    """Read a raw program image from disk"""
    with open(path, 'rb') as f:
        return f.read()


class Chip8Audio:
    """Plays a short square-wave tone for each sound-timer edge"""

    def __init__(self, config: FrontendConfig):
        self.config = config
        self._sound: Optional[pygame.mixer.Sound] = None

        if config.mute:
            return
        try:
            pygame.mixer.init(frequency=44100, size=-16, channels=1)
            self._sound = self._build_tone()
        except pygame.error as e:
            logger.warning("Audio unavailable, using terminal bell: %s", e)

    def _build_tone(self) -> pygame.mixer.Sound:
        rate, _, channels = pygame.mixer.get_init()
        period = max(1, rate // self.config.tone_frequency)
        total = int(rate * self.config.tone_duration)

        samples = array.array('h')
        for n in range(total):
            level = 8000 if (n % period) < period // 2 else -8000
            samples.extend([level] * channels)
        return pygame.mixer.Sound(buffer=samples.tobytes())

    def beep(self):
        """Tone callback for Machine.on_tone"""
        if self.config.mute:
            return
        if self._sound is not None:
            self._sound.play()
        else:
            print('\a', end='', flush=True)

    def close(self):
        if self._sound is not None:
            pygame.mixer.quit()
            self._sound = None


class Chip8Controller:
    """Game controller input mapped onto the hex keypad"""

    BUTTON_SQUARE = 0
    BUTTON_CIRCLE = 1
    BUTTON_CROSS = 2
    BUTTON_TRIANGLE = 3
    BUTTON_L1 = 4
    BUTTON_R1 = 5
    BUTTON_L2 = 6
    BUTTON_R2 = 7
    BUTTON_SHARE = 8
    BUTTON_OPTIONS = 9

    BUTTON_MAP = {
        BUTTON_SQUARE: 0x4,
        BUTTON_CIRCLE: 0x6,
        BUTTON_CROSS: 0x5,
        BUTTON_TRIANGLE: 0x1,
        BUTTON_L1: 0xA,
        BUTTON_R1: 0xB,
        BUTTON_L2: 0xC,
        BUTTON_R2: 0xD,
    }

    # D-Pad (as hat) -> 2=up, 8=down, 4=left, 6=right on the classic pad
    HAT_MAP = {
        (0, 1): 0x2,
        (0, -1): 0x8,
        (-1, 0): 0x4,
        (1, 0): 0x6,
    }

    def __init__(self, on_key_change: Callable[[int, bool], None]):
        self.on_key_change = on_key_change
        self.joystick = None
        self.connected = False
        self.running = False
        self._hat_key: Optional[int] = None
        self._thread: Optional[threading.Thread] = None

        self.on_reset: Optional[Callable] = None
        self.on_pause_toggle: Optional[Callable] = None

        pygame.init()
        pygame.joystick.init()

    def start(self):
        """Start controller polling thread"""
        self.running = True
        self._thread = threading.Thread(target=self._poll_loop, daemon=True)
        self._thread.start()

    def stop(self):
        self.running = False
        if self._thread:
            self._thread.join(timeout=1.0)

    def _poll_loop(self):
        while self.running:
            self._check_connection()
            if self.connected:
                self._process_input()
            time.sleep(1 / 120)

    def _check_connection(self):
        pygame.event.pump()
        count = pygame.joystick.get_count()

        if count > 0 and not self.connected:
            self.joystick = pygame.joystick.Joystick(0)
            self.joystick.init()
            self.connected = True
            logger.info("Controller connected: %s", self.joystick.get_name())
        elif count == 0 and self.connected:
            self.connected = False
            self.joystick = None
            logger.info("Controller disconnected")

    def _process_input(self):
        for event in pygame.event.get():
            if event.type == pygame.JOYBUTTONDOWN:
                self.handle_button(event.button, True)
            elif event.type == pygame.JOYBUTTONUP:
                self.handle_button(event.button, False)
            elif event.type == pygame.JOYHATMOTION:
                self.handle_hat(event.value)

    def handle_button(self, button: int, pressed: bool):
        if pressed and button == self.BUTTON_OPTIONS and self.on_pause_toggle:
            self.on_pause_toggle()
        elif pressed and button == self.BUTTON_SHARE and self.on_reset:
            self.on_reset()
        elif button in self.BUTTON_MAP:
            self.on_key_change(self.BUTTON_MAP[button], pressed)

    def handle_hat(self, value: tuple):
        if self._hat_key is not None:
            self.on_key_change(self._hat_key, False)
            self._hat_key = None
        key = self.HAT_MAP.get(tuple(value))
        if key is not None:
            self._hat_key = key
            self.on_key_change(key, True)


class Chip8Display:
    """Tkinter canvas renderer, one rectangle per pixel"""

    def __init__(self, canvas: tk.Canvas, config: FrontendConfig):
        self.canvas = canvas
        self.config = config
        self.pixel_rects: Dict[int, int] = {}
        self._shown: List[int] = []
        self._create_pixels()

    def _create_pixels(self):
        self.canvas.delete("all")
        scale = self.config.scale

        for y in range(DISPLAY_HEIGHT):
            for x in range(DISPLAY_WIDTH):
                x1 = x * scale
                y1 = y * scale
                self.pixel_rects[y * DISPLAY_WIDTH + x] = self.canvas.create_rectangle(
                    x1, y1, x1 + scale, y1 + scale,
                    fill=self.config.pixel_off, outline=""
                )
        self._shown = [0] * (DISPLAY_WIDTH * DISPLAY_HEIGHT)

    def render(self, vram: Sequence[int]):
        """Repaint pixels that changed since the last frame"""
        for index, value in enumerate(vram):
            if value != self._shown[index]:
                color = self.config.pixel_on if value else self.config.pixel_off
                self.canvas.itemconfig(self.pixel_rects[index], fill=color)
                self._shown[index] = value


class Chip8GUI:
    """Main application window"""

    def __init__(self, config: FrontendConfig):
        self.config = config
        width = DISPLAY_WIDTH * config.scale
        height = DISPLAY_HEIGHT * config.scale

        self.root = tk.Tk()
        self.root.title("CHIP-8")
        self.root.geometry(f"{width}x{height + STATUS_BAR_HEIGHT}")
        self.root.resizable(False, False)
        self.root.configure(bg=config.pixel_off)

        self.audio = Chip8Audio(config)
        self.machine = Machine(on_tone=self.audio.beep)
        self._lock = threading.Lock()

        self.rom_data: Optional[bytes] = None
        self.rom_name = ""
        self.running = False
        self.paused = False
        self.fault: Optional[str] = None
        self.speed_multiplier = 1

        self._create_ui(width, height)
        self.display_renderer = Chip8Display(self.canvas, config)
        self._bind_keys()

        self.controller: Optional[Chip8Controller] = None
        if config.controller:
            self.controller = Chip8Controller(self._on_pad_key)
            self.controller.on_reset = self._reset
            self.controller.on_pause_toggle = self._toggle_pause
            self.controller.start()

        self._emu_thread: Optional[threading.Thread] = None

    def _create_ui(self, width: int, height: int):
        self.canvas = tk.Canvas(
            self.root,
            width=width,
            height=height,
            bg=self.config.pixel_off,
            highlightthickness=0
        )
        self.canvas.pack(side=tk.TOP)

        status_frame = tk.Frame(self.root, height=STATUS_BAR_HEIGHT, bg=STATUS_BG)
        status_frame.pack(side=tk.BOTTOM, fill=tk.X)
        status_frame.pack_propagate(False)

        self.rom_label = self._status_label(status_frame, "No ROM (click to open)", tk.LEFT)
        self.state_label = self._status_label(status_frame, "Stopped", tk.RIGHT)
        self.speed_label = self._status_label(status_frame, "1×", tk.RIGHT)

    def _status_label(self, parent: tk.Frame, text: str, side: str) -> tk.Label:
        label = tk.Label(parent, text=text, fg=STATUS_FG, bg=STATUS_BG, font=("Courier", 10))
        label.pack(side=side, padx=10)
        return label

    def _bind_keys(self):
        self.root.bind("<KeyPress>", self._on_key_down)
        self.root.bind("<KeyRelease>", self._on_key_up)
        self.root.bind("<Control-r>", lambda e: self._reset())
        self.root.bind("<space>", lambda e: self._toggle_pause())
        self.root.bind("<F1>", lambda e: self._decrease_speed())
        self.root.bind("<F2>", lambda e: self._increase_speed())
        self.canvas.bind("<Button-1>", self._on_click)

    def _on_key_down(self, event):
        key = KEYBOARD_MAP.get(event.keysym.lower())
        if key is not None:
            self._on_pad_key(key, True)

    def _on_key_up(self, event):
        key = KEYBOARD_MAP.get(event.keysym.lower())
        if key is not None:
            self._on_pad_key(key, False)

    def _on_pad_key(self, key: int, pressed: bool):
        with self._lock:
            if pressed:
                self.machine.set_key(key)
            else:
                self.machine.clear_key(key)

    def _on_click(self, event):
        if self.rom_data is None:
            path = filedialog.askopenfilename(
                title="Select CHIP-8 ROM",
                filetypes=[("CHIP-8 ROM", "*.ch8 *.bin"), ("All files", "*.*")]
            )
            if path:
                self.load_rom(path)

    def load_rom(self, path: str):
        """Load a ROM file and start running it"""
        try:
            data = load_rom_file(path)
            with self._lock:
                self.machine.load(data)
        except (OSError, Chip8Error) as e:
            logger.error("Failed to load ROM %s: %s", path, e)
            self.rom_label.config(text=f"Load failed: {e}")
            return

        self.rom_data = data
        self.rom_name = os.path.basename(path)
        self.fault = None
        self.rom_label.config(text=f"ROM: {self.rom_name}")
        logger.info("Loaded %s (%d bytes)", self.rom_name, len(data))
        self._start_emulation()

    def _start_emulation(self):
        self.running = True
        self.paused = False
        self._update_status()

        if self._emu_thread is None or not self._emu_thread.is_alive():
            self._emu_thread = threading.Thread(target=self._emulation_loop, daemon=True)
            self._emu_thread.start()
            self._render_loop()

    def _emulation_loop(self):
        """Run cycles_per_frame x speed instructions per frame"""
        frame_time = 1 / self.config.target_fps

        while self.running:
            if not self.paused:
                cycles = self.config.cycles_per_frame * self.speed_multiplier
                try:
                    with self._lock:
                        self.machine.run(cycles)
                except Chip8Error as e:
                    logger.error("Machine halted: %s", e)
                    self.fault = str(e)
                    self.running = False
                    break
            time.sleep(frame_time)

    def _render_loop(self):
        with self._lock:
            dirty = self.machine.draw_flag
            vram = list(self.machine.vram) if dirty else None
            self.machine.draw_flag = False

        if vram is not None:
            self.display_renderer.render(vram)

        if self.fault is not None:
            self.state_label.config(text="Halted")
            self.rom_label.config(text=self.fault)
            return

        if self.running:
            self.root.after(1000 // self.config.target_fps, self._render_loop)

    def _update_status(self):
        if self.fault is not None:
            self.state_label.config(text="Halted")
        elif self.paused:
            self.state_label.config(text="Paused")
        elif self.running:
            self.state_label.config(text="Running")
        else:
            self.state_label.config(text="Stopped")
        self.speed_label.config(text=f"{self.speed_multiplier}×")

    def _reset(self):
        """Reload the current ROM"""
        if self.rom_data is None:
            return
        with self._lock:
            self.machine.load(self.rom_data)
        self.fault = None
        self.rom_label.config(text=f"ROM: {self.rom_name}")
        self._start_emulation()

    def _toggle_pause(self):
        self.paused = not self.paused
        self._update_status()

    def _increase_speed(self):
        if self.speed_multiplier < self.config.max_speed:
            self.speed_multiplier *= 2
            self._update_status()

    def _decrease_speed(self):
        if self.speed_multiplier > 1:
            self.speed_multiplier //= 2
            self._update_status()

    def run(self):
        self.root.protocol("WM_DELETE_WINDOW", self._on_close)
        self.root.mainloop()

    def _on_close(self):
        self.running = False
        if self.controller:
            self.controller.stop()
        self.audio.close()
        self.root.destroy()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="CHIP-8 virtual machine")
    parser.add_argument("rom", nargs="?", help="Program image to load (.ch8)")
    parser.add_argument("--scale", type=int, default=FrontendConfig.scale,
                        help="Screen pixels per CHIP-8 pixel")
    parser.add_argument("--cycles-per-frame", type=int, default=FrontendConfig.cycles_per_frame,
                        help="Instructions executed per frame (timers tick per instruction)")
    parser.add_argument("--fps", type=int, default=FrontendConfig.target_fps,
                        help="Frames per second")
    parser.add_argument("--no-controller", action="store_true",
                        help="Do not poll for game controllers")
    parser.add_argument("--mute", action="store_true", help="Disable the tone")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging verbosity")
    args = parser.parse_args(argv)

    for name in ("scale", "cycles_per_frame", "fps"):
        if getattr(args, name) < 1:
            parser.error(f"--{name.replace('_', '-')} must be at least 1")
    return args


def config_from_args(args: argparse.Namespace) -> FrontendConfig:
    return FrontendConfig(
        scale=args.scale,
        cycles_per_frame=args.cycles_per_frame,
        target_fps=args.fps,
        mute=args.mute,
        controller=not args.no_controller,
    )


def main(argv: Optional[Sequence[str]] = None):
    """Main entry point"""
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    app = Chip8GUI(config_from_args(args))
    if args.rom:
        app.load_rom(args.rom)
    app.run()


if __name__ == "__main__":
    main()
