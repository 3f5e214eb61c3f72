"""
Build the Mail Merge front-end as a portable Windows .exe

Usage:
    python build_exe.py

Output:
    dist/Mail_Merge.exe

Requires the build extra (pip install .[build]).
"""

import shutil
import subprocess
import sys
import time
from pathlib import Path

ROOT = Path(__file__).parent
ICON = ROOT / "assets" / "icon.ico"
ENTRY = ROOT / "mail_merge_gui.py"
APP_NAME = "Mail_Merge"

# Imported lazily or through optional-import guards, so PyInstaller misses them.
HIDDEN_IMPORTS = (
    "docx",
    "openpyxl",
    "pypdf",
    "reportlab.platypus",
    "win32com.client",
    "pythoncom",
    "pywintypes",
)
# reportlab reads its fonts and rl_settings as package data.
COLLECT_ALL = ("reportlab",)


def build_command(icon: Path = ICON) -> list:
    cmd = [
        sys.executable, "-m", "PyInstaller",
        "--noconfirm",
        "--onefile",
        "--windowed",
        f"--name={APP_NAME}",
    ]
    if icon is not None and icon.exists():
        cmd.append(f"--icon={icon}")
    cmd += [f"--hidden-import={module}" for module in HIDDEN_IMPORTS]
    cmd += [f"--collect-all={package}" for package in COLLECT_ALL]
    cmd.append(str(ENTRY))
    return cmd


def cleanup_build_dirs():
    for dirname in ("build", "dist"):
        dirpath = ROOT / dirname
        if dirpath.exists():
            try:
                print(f"Cleaning {dirname}/ directory...")
                shutil.rmtree(dirpath)
            except PermissionError:
                print(f"  WARNING: Could not fully remove {dirname}/ (may be locked)")
            # Give Windows time to release file handles.
            time.sleep(0.5)


def main():
    if not ENTRY.exists():
        print(f"ERROR: Entry point not found: {ENTRY}")
        sys.exit(1)

    try:
        import PyInstaller  # noqa: F401
    except ImportError:
        print("ERROR: PyInstaller is not installed. Run: pip install .[build]")
        sys.exit(1)

    cleanup_build_dirs()
    cmd = build_command()
    if not ICON.exists():
        print(f"INFO: No icon found at {ICON}, building without icon.")

    print("\n" + "=" * 60)
    print(f"Building {APP_NAME}.exe ...")
    print("=" * 60)
    print(" ".join(cmd))
    print()

    result = subprocess.run(cmd, cwd=ROOT)
    if result.returncode != 0:
        print("\nERROR: PyInstaller build failed (see output above).")
        sys.exit(result.returncode)

    exe_path = ROOT / "dist" / f"{APP_NAME}.exe"
    print("\n" + "=" * 60)
    if exe_path.exists():
        size_mb = exe_path.stat().st_size / (1024 * 1024)
        print(f"SUCCESS: {exe_path}  ({size_mb:.1f} MB)")
    else:
        print(f"WARNING: Build finished but {exe_path} not found. Check PyInstaller output.")
    print("=" * 60)


if __name__ == "__main__":
    main()
