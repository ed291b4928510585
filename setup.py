import os
import sys
from setuptools import setup, find_namespace_packages

def is_termux():
    path = os.environ.get("PATH", "")
    return "TERMUX_VERSION" in os.environ or "/data/data/com.termux" in path

# --- AUTOMATED SYSTEM SETUP ---
if is_termux() and "install" in sys.argv:
    import subprocess
    print("📱 Termux detected. Attempting to install system dependencies (ffmpeg)...")
    try:
        # Try to install system dependencies silently
        subprocess.run(["pkg", "install", "-y", "ffmpeg"], check=False)
    except OSError:
        print("⚠️ Warning: Failed to run 'pkg install' automatically. Please run 'pkg install ffmpeg' after installation.")
# ------------------------------

CORE_DEPS = [
    "yt-dlp",
    "python-dotenv",
    "colorama",
    "psutil",
]

TEST_DEPS = [
    "pytest",
]

setup(
    name="vidq",
    version="0.1.0",
    packages=find_namespace_packages(include=["vidq", "vidq.*"]),
    python_requires=">=3.8",
    install_requires=CORE_DEPS,
    extras_require={
        "test": TEST_DEPS,
    },
    entry_points={
        "console_scripts": [
            "vidq=vidq.main:main",
        ],
    },
)
