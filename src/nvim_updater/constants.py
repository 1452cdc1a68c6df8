"""Centralized defaults and well-known names."""

from __future__ import annotations

DEFAULT_CONFIG_PATH = "~/.config/nvim-updater/config.toml"
DEFAULT_SOURCE_DIR = "~/.local/src/neovim"
DEFAULT_REPO = "https://github.com/neovim/neovim.git"
DEFAULT_TAG = "stable"

# Set by wrappers that run the updater without a human watching
HEADLESS_ENV_VAR = "NVIMUPDATER_HEADLESS"

# Exit status reported when a surface is closed before its command finished
ABORTED = -1

# Branches tried, in order, when origin/HEAD does not name one
PRIMARY_BRANCH_CANDIDATES: tuple[str, ...] = ("master", "main")
