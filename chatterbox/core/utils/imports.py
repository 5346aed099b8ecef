"""
Module import utilities for locating an app instance.

- import_file_path(): import from a file path, adding its directory to sys.path
- setup_sys_path_from_cwd(): add cwd to sys.path when it is a project root

No implicit heuristics beyond that; the caller controls module naming.
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from typing import Any

from chatterbox.core.logging import get_logger

logger = get_logger('imports')

_PROJECT_MARKERS = ('pyproject.toml', 'setup.cfg', 'setup.py')


def find_project_root(start_dir: str) -> str | None:
    """Return start_dir if it holds a project marker file.

    Does not traverse up, so a monorepo root never shadows a service.
    """
    start_dir = os.path.abspath(start_dir)
    for marker in _PROJECT_MARKERS:
        if os.path.exists(os.path.join(start_dir, marker)):
            return start_dir
    return None


def setup_sys_path_from_cwd() -> str | None:
    """If cwd is a project root, add it to sys.path and return it."""
    cwd = os.getcwd()
    if find_project_root(cwd) and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f'Added cwd to sys.path: {cwd}')
        return cwd
    return None


def _synthetic_module_name(path: str) -> str:
    realpath = os.path.realpath(path)
    return f'chatterbox_dynamic_{hashlib.sha256(realpath.encode()).hexdigest()[:12]}'


def import_file_path(file_path: str, module_name: str | None = None) -> Any:
    """
    Import a module from a file path.

    Adds the parent directory to sys.path, loads the file under `module_name`
    (or a stable synthetic name derived from its path) and returns it.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ImportError: If the module can't be loaded
    """
    file_path = os.path.realpath(file_path)
    if not os.path.exists(file_path):
        raise FileNotFoundError(f'Module file not found: {file_path}')

    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, '__file__', None)
        if mod_file and os.path.realpath(mod_file) == file_path:
            return mod

    parent_dir = os.path.dirname(file_path)
    if parent_dir not in sys.path:
        sys.path.insert(0, parent_dir)

    module_name = module_name or _synthetic_module_name(file_path)
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {file_path}')

    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    spec.loader.exec_module(mod)
    return mod
