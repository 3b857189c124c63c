"""Pytest configuration.

Makes `provisioner` importable from src/ without an install and exposes the
azure_mock test double package.
"""

import sys
from pathlib import Path

src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# azure_mock lives next to the tests
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))
