#!/usr/bin/env python3
"""
Test runner for all language server tests
"""
import sys
from pathlib import Path

import pytest


def run_all_tests():
    """Run all test suites and return the pytest exit code"""
    tests_dir = Path(__file__).parent
    return pytest.main([str(tests_dir), "-v"])


if __name__ == '__main__':
    print("Running all language server tests...\n")
    sys.exit(run_all_tests())
