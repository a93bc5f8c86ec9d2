"""Import checks for package entry points.

Each module is imported in a fresh interpreter so that modules already loaded
by other tests cannot hide an import cycle.
"""

import subprocess
import sys

import pytest


class TestPackageImports:
    """Test every layer imports on its own."""

    @pytest.mark.parametrize("module", [
        "clinport.domain",
        "clinport.domain.import_structure",
        "clinport.domain.services",
        "clinport.domain.services.reconciler",
        "clinport.adapters.normalizers",
        "clinport.main",
        "clinport.cli",
    ])
    def test_module_imports_cleanly(self, module):
        result = subprocess.run(
            [sys.executable, "-c", f"import {module}"],
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0, result.stderr
