"""Pytest configuration for infra_plane tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest


@pytest.fixture
def workspace_root(tmp_path):
    """Create a temporary workspace root for testing."""
    workspace = tmp_path / 'workspaces'
    workspace.mkdir()
    return workspace


@pytest.fixture
def template_dir(tmp_path):
    """Create a minimal canonical template set."""
    templates = tmp_path / 'terraform'
    (templates / 'lambda').mkdir(parents=True)
    (templates / 'scripts').mkdir()
    (templates / 'provider.tf').write_text('provider "aws" {}\n')
    (templates / 'variables.tf').write_text('variable "session_id" {}\n')
    (templates / 'backend.tf').write_text('terraform {}\n')
    (templates / 'lambda' / 'alarm_processor.py').write_text('def handler(event, ctx): ...\n')
    (templates / 'scripts' / 'bootstrap-backend.sh').write_text('#!/bin/sh\n')
    (templates / 'README.md').write_text('not copied\n')
    return templates
