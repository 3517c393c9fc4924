#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

SMOKE_PATIENT = "smoke-patient"


@dataclass
class Scenario:
  name: str
  message: str
  expected_type: str | None
  expected_count: int | None = None


SEED_RESOURCES: list[dict[str, Any]] = [
  {
    "resourceType": "Encounter",
    "id": "smoke-enc-1",
    "status": "finished",
    "type": [{"text": "Annual physical"}],
    "period": {"start": "2024-02-10T09:00:00Z"},
  },
  {
    "resourceType": "Encounter",
    "id": "smoke-enc-2",
    "status": "finished",
    "type": [{"text": "Follow-up visit"}],
    "period": {"start": "2024-06-18T14:30:00Z"},
  },
  {
    "resourceType": "Observation",
    "id": "smoke-obs-1",
    "status": "final",
    "code": {"coding": [{"system": "http://loinc.org", "code": "2093-3", "display": "Cholesterol"}]},
    "valueQuantity": {"value": 188, "unit": "mg/dL"},
    "effectiveDateTime": "2024-02-10",
  },
  {
    "resourceType": "MedicationStatement",
    "id": "smoke-med-1",
    "status": "active",
    "medicationCodeableConcept": {"text": "Atorvastatin 20 MG"},
    "effectivePeriod": {"start": "2024-02-12"},
  },
  {
    "resourceType": "DiagnosticReport",
    "id": "smoke-report-1",
    "status": "final",
    "code": {"text": "Lipid panel"},
    "effectiveDateTime": "2024-02-10",
    "conclusion": "Borderline high total cholesterol.",
  },
]


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Local-only mode so the smoke run never reaches the gateway.
  workdir = tempfile.mkdtemp(prefix="wellwallet-smoke-")
  os.environ["WELLWALLET_DB_PATH"] = str(Path(workdir) / "smoke.sqlite")
  os.environ["WELLWALLET_REMOTE_FALLBACK"] = "false"

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  store = backend_module.container.store
  for resource in SEED_RESOURCES:
    store.upsert_record(SMOKE_PATIENT, resource)

  headers = {"X-Patient-Id": SMOKE_PATIENT}
  scenarios = [
    Scenario(name="Recent Visits", message="show me my recent visits", expected_type="Encounter", expected_count=2),
    Scenario(name="Lab Value", message="what is my latest cholesterol", expected_type="Observation", expected_count=1),
    Scenario(name="Test Results", message="show me my test results", expected_type="DiagnosticReport", expected_count=1),
    Scenario(name="Follow-up By Number", message="show me record 1", expected_type="DiagnosticReport", expected_count=1),
    Scenario(name="Active Medications", message="list my active medications please", expected_type="MedicationStatement", expected_count=1),
    Scenario(name="Vague Question", message="show me", expected_type=None),
  ]

  results: list[dict[str, Any]] = []

  with TestClient(backend_module.app) as client:
    for scenario in scenarios:
      response = client.post("/query", headers=headers, json={"message": scenario.message})
      scenario_result: dict[str, Any] = {
        "name": scenario.name,
        "message": scenario.message,
        "expected_type": scenario.expected_type,
        "status_code": response.status_code,
      }

      if response.status_code != 200:
        scenario_result["pass"] = False
        scenario_result["error"] = f"/query returned {response.status_code}"
        results.append(scenario_result)
        continue

      body = response.json()
      plan = body.get("plan") if isinstance(body, dict) else None
      actual_type = plan.get("resource_type") if isinstance(plan, dict) else None
      records = body.get("records") or []
      scenario_result["actual_type"] = actual_type
      scenario_result["record_count"] = len(records)
      scenario_result["markdown_preview"] = str(body.get("markdown") or "")[:240]

      if scenario.expected_type is None:
        scenario_result["pass"] = bool(body.get("needs_clarification"))
        if not scenario_result["pass"]:
          scenario_result["error"] = "Expected a clarification request."
        results.append(scenario_result)
        continue

      scenario_result["pass"] = actual_type == scenario.expected_type and (
        scenario.expected_count is None or len(records) == scenario.expected_count
      )
      if not scenario_result["pass"]:
        scenario_result["error"] = (
          f"Expected {scenario.expected_type} x{scenario.expected_count}, got {actual_type!r} x{len(records)}"
        )
      results.append(scenario_result)

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Query Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- Database: `{os.getenv('WELLWALLET_DB_PATH')}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Message: `{item.get('message')}`")
    report_lines.append(f"- Expected type: `{item.get('expected_type')}`")
    report_lines.append(f"- Actual type: `{item.get('actual_type')}`")
    report_lines.append(f"- Records: `{item.get('record_count')}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    preview = item.get("markdown_preview") or ""
    if preview:
      report_lines.append("- Answer preview:")
      report_lines.append("```markdown")
      report_lines.append(preview)
      report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "QUERY_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(json.dumps({"passed": passed, "total": len(results)}))

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
