"""Test configuration: make the repository root importable.

core/ and tools/ are plain directories at the root, imported as
core.validation, tools.file_read and so on.
"""

import os
import sys

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
