"""macOS accessibility backend: finds and focuses Alacritty windows via pyobjc."""
import logging
from typing import List, Optional, Tuple

from AppKit import NSRunningApplication, NSWorkspace
from ApplicationServices import (
    AXIsProcessTrustedWithOptions,
    AXUIElementCopyAttributeValue,
    AXUIElementCreateApplication,
    AXUIElementCreateSystemWide,
    AXUIElementGetPid,
    AXUIElementPerformAction,
    AXUIElementSetAttributeValue,
    AXValueGetValue,
    kAXFocusedApplicationAttribute,
    kAXFocusedAttribute,
    kAXFocusedWindowAttribute,
    kAXMainAttribute,
    kAXPositionAttribute,
    kAXRaiseAction,
    kAXSizeAttribute,
    kAXTrustedCheckOptionPrompt,
    kAXValueCGPointType,
    kAXValueCGSizeType,
    kAXWindowsAttribute,
)

from ttyhop import Rect, WindowSystem

TARGET_BUNDLE_IDS = ("org.alacritty", "io.alacritty")
TARGET_NAME = "Alacritty"

kAXErrorSuccess = 0


def _ax_copy_attr(element, attr):
    err, value = AXUIElementCopyAttributeValue(element, attr, None)
    return value if err == kAXErrorSuccess else None


def _pid_of(element) -> Optional[int]:
    err, pid = AXUIElementGetPid(element, None)
    return pid if err == kAXErrorSuccess else None


def _running_app(element):
    pid = _pid_of(element)
    if pid is None:
        return None
    return NSRunningApplication.runningApplicationWithProcessIdentifier_(pid)


def _describe(running_app) -> Tuple[str, str]:
    if running_app is None:
        return "", ""
    return running_app.bundleIdentifier() or "", running_app.localizedName() or ""


class MacWindowSystem(WindowSystem):
    """Windows of the frontmost application through the AX API.

    Window handles are AXUIElements; equal handles refer to the same window.
    """

    def is_trusted(self) -> bool:
        trusted = bool(AXIsProcessTrustedWithOptions({kAXTrustedCheckOptionPrompt: True}))
        logging.debug(f"accessibility trusted={str(trusted).lower()}")
        return trusted

    def _front_app_ws(self):
        running = NSWorkspace.sharedWorkspace().frontmostApplication()
        if running is None:
            logging.debug("frontmostApplication: nil")
            return None
        bid, name = _describe(running)
        pid = running.processIdentifier()
        logging.debug(f"frontmost (WS): bid={bid} name={name} pid={pid}")
        return AXUIElementCreateApplication(pid)

    def _front_app_ax(self):
        app = _ax_copy_attr(AXUIElementCreateSystemWide(), kAXFocusedApplicationAttribute)
        if app is None:
            logging.debug("AX focused app: none")
            return None
        bid, name = _describe(_running_app(app))
        logging.debug(f"frontmost (AX): bid={bid} name={name} pid={_pid_of(app)}")
        return app

    def front_app(self):
        app = self._front_app_ws()
        if app is None:
            app = self._front_app_ax()
        return app

    def front_app_info(self) -> Tuple[str, str, str]:
        bid, name = _describe(NSWorkspace.sharedWorkspace().frontmostApplication())
        if bid or name:
            return bid, name, "WS"

        app = _ax_copy_attr(AXUIElementCreateSystemWide(), kAXFocusedApplicationAttribute)
        if app is None:
            return "", "", "AX"
        bid, name = _describe(_running_app(app))
        return bid, name, "AX"

    def is_target_app(self, app) -> bool:
        running = _running_app(app)
        if running is None:
            return False
        bid, name = _describe(running)
        ok = bid in TARGET_BUNDLE_IDS or name == TARGET_NAME
        logging.debug(f"app_is_alacritty={str(ok).lower()} (bid={bid} name={name})")
        return ok

    def focused_window(self, app):
        window = _ax_copy_attr(app, kAXFocusedWindowAttribute)
        if window is not None:
            return window
        windows = self.all_windows(app)
        return windows[0] if windows else None

    def all_windows(self, app) -> Optional[List]:
        windows = _ax_copy_attr(app, kAXWindowsAttribute)
        if windows is None:
            return None
        return list(windows)

    def rect(self, window) -> Optional[Rect]:
        pos_val = _ax_copy_attr(window, kAXPositionAttribute)
        size_val = _ax_copy_attr(window, kAXSizeAttribute)
        if pos_val is None or size_val is None:
            return None
        ok_pos, pos = AXValueGetValue(pos_val, kAXValueCGPointType, None)
        ok_size, size = AXValueGetValue(size_val, kAXValueCGSizeType, None)
        if not ok_pos or not ok_size or pos is None or size is None:
            return None

        return Rect(
            x=float(getattr(pos, "x", pos[0])),
            y=float(getattr(pos, "y", pos[1])),
            width=float(getattr(size, "width", size[0])),
            height=float(getattr(size, "height", size[1])),
        )

    def focus(self, app, window):
        AXUIElementPerformAction(window, kAXRaiseAction)
        AXUIElementSetAttributeValue(window, kAXMainAttribute, True)
        AXUIElementSetAttributeValue(window, kAXFocusedAttribute, True)
        AXUIElementSetAttributeValue(app, kAXFocusedWindowAttribute, window)
        running = _running_app(window)
        if running is not None:
            running.activateWithOptions_(0)
