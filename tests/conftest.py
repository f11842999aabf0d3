from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


SAMPLE_STACK = """
name: demo-stack
release_name: calm-river-0a1b

services:
  postgres:
    service: postgresql
    inputs:
      name: postgres
      port: 5432
    deploy:
      chart:
        repository: https://charts.example.com
        chart: postgresql
        version: 12.1.0
  flaskapp:
    service: flaskapp
    inputs:
      db_host: self.service.postgres.output.host
      db_port: self.service.postgres.output.port
    deploy:
      custom_chart: charts/flaskapp

projects:
  frontend:
    project: react-app
    deps:
      - flaskapp
    inputs:
      name: frontend
    init_steps:
      - npx create-react-app self.inputs.name
    build:
      tag: latest
      registry: local
    deploy:
      custom_chart: charts/frontend

executors:
  init:
    type: noop
  build:
    type: noop
  deploy:
    type: noop
    with:
      outputs:
        postgres:
          host: 10.0.0.5
          port: 5432
"""


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    project_dir = tmp_path / "project"
    project_dir.mkdir(parents=True)
    (project_dir / "frontend").mkdir()
    (project_dir / "frontend" / "Dockerfile").write_text("FROM node:20\n", encoding="utf-8")
    (project_dir / "stack.yaml").write_text(SAMPLE_STACK.strip() + "\n", encoding="utf-8")
    return project_dir
