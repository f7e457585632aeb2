"""
pytest configuration for pipeline tests.

Adds src directory to Python path for imports and sets up test environment.
"""

import os
import sys
from pathlib import Path

# Set test environment variables BEFORE any imports
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("SUBJECT_HASH_SALT", "test-salt")
os.environ.setdefault("ENVELOPE_SIGNING_KEY", "test-signing-key")

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))
