# adapters.py
"""
Adapter contract for external tools (build tool, static-analysis scanner,
cloud deployment CLI).

The engine only knows `AdapterRegistry.invoke(name, params, secrets, call)`.
Each adapter declares the parameters it accepts so step definitions are
validated when the graph is built, not halfway through a run.
"""
from __future__ import annotations

import json
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, TextIO

from .errors import AdapterNotFoundError, DefinitionError
from .gates import GateResult, MetricViolation
from .model import Step

# launcher(command, *, env=None, cwd=None) -> exit code
# Provided by the StepRunner; enforces the step timeout and cancellation.
Launcher = Callable[..., int]


@dataclass
class AdapterCall:
    """Everything an adapter may touch while it runs."""
    job: str
    step: str
    workdir: Path
    env: Dict[str, str]
    log: TextIO
    launch: Launcher
    source_root: Path = field(default_factory=lambda: Path(".").resolve())


@dataclass(frozen=True)
class RawResult:
    exit_code: int
    gate: Optional[GateResult] = None
    message: str = ""


class Adapter:
    name: str = ""
    required_params: FrozenSet[str] = frozenset()
    optional_params: FrozenSet[str] = frozenset()
    reports_gate: bool = False

    def invoke(self, params: Mapping[str, str], secrets: Mapping[str, str], call: AdapterCall) -> RawResult:
        raise NotImplementedError

    def validate(self, step: Step) -> None:
        given = set(step.params)
        missing = sorted(self.required_params - given)
        if missing:
            raise DefinitionError(
                f"Step '{step.name}' (uses: {self.name}) is missing required params: {missing}"
            )
        unknown = sorted(given - self.required_params - self.optional_params)
        if unknown:
            raise DefinitionError(
                f"Step '{step.name}' (uses: {self.name}) has unknown params: {unknown}"
            )
        if step.is_gate and not self.reports_gate:
            raise DefinitionError(
                f"Step '{step.name}' declares a gate but adapter '{self.name}' reports no gate result"
            )


class AdapterRegistry:
    def __init__(self, adapters: Optional[List[Adapter]] = None):
        self._adapters: Dict[str, Adapter] = {}
        for a in adapters or []:
            self.register(a)

    def register(self, adapter: Adapter) -> None:
        if not adapter.name:
            raise ValueError("adapter must have a name")
        self._adapters[adapter.name] = adapter

    def names(self) -> List[str]:
        return sorted(self._adapters)

    def get(self, name: str) -> Optional[Adapter]:
        return self._adapters.get(name)

    def validate(self, step: Step) -> None:
        """Graph-build time check of an adapter step."""
        if step.uses is None:
            if step.is_gate:
                raise DefinitionError(f"Step '{step.name}': only adapter steps can be gates")
            return
        adapter = self.get(step.uses)
        if adapter is None:
            raise DefinitionError(
                f"Step '{step.name}' uses unknown adapter '{step.uses}'. Known adapters: {self.names()}"
            )
        adapter.validate(step)

    def invoke(
        self,
        name: str,
        params: Mapping[str, str],
        secrets: Mapping[str, str],
        call: AdapterCall,
    ) -> RawResult:
        adapter = self.get(name)
        if adapter is None:
            raise AdapterNotFoundError(job=call.job, step=call.step, adapter=name)
        return adapter.invoke(params, secrets, call)


# ----------------------------------------------------------------------
# Built-in adapters
# ----------------------------------------------------------------------

CHECKOUT_IGNORE = (".git", ".gateci", "__pycache__")


class CheckoutAdapter(Adapter):
    """
    Put sources into the job workspace.
      repo + ref: git clone at ref
      path:       copy a local directory (default: the pipeline's source root)
    """
    name = "checkout"
    optional_params = frozenset({"path", "repo", "ref", "dest"})

    def invoke(self, params, secrets, call):
        dest = (call.workdir / params.get("dest", ".")).resolve()

        repo = params.get("repo")
        if repo:
            # git refuses to clone into a non-empty directory
            dest.parent.mkdir(parents=True, exist_ok=True)
            code = call.launch(["git", "clone", "--quiet", repo, str(dest)])
            if code != 0:
                return RawResult(code, message=f"git clone failed for {repo}")
            ref = params.get("ref")
            if ref:
                code = call.launch(["git", "checkout", "--quiet", ref], cwd=dest)
                if code != 0:
                    return RawResult(code, message=f"git checkout {ref} failed")
            return RawResult(0, message=f"cloned {repo}")

        src = (call.source_root / params.get("path", ".")).resolve()
        if not src.is_dir():
            call.log.write(f"checkout: source directory not found: {src}\n")
            return RawResult(1, message=f"source directory not found: {src}")

        shutil.copytree(
            src,
            dest,
            ignore=shutil.ignore_patterns(*CHECKOUT_IGNORE),
            dirs_exist_ok=True,
        )
        call.log.write(f"checkout: copied {src} -> {dest}\n")
        return RawResult(0, message=f"copied {src}")


class BuildAdapter(Adapter):
    """Run the project's build tool (npm, mvn, make, ...)."""
    name = "build"
    required_params = frozenset({"command"})
    optional_params = frozenset({"tool"})

    def invoke(self, params, secrets, call):
        code = call.launch(params["command"])
        return RawResult(code)


class ScanAdapter(Adapter):
    """
    Run a static-analysis scanner and read its quality gate report.

    The report is JSON, either the SonarQube project status shape:
        {"projectStatus": {"status": "OK"|"ERROR", "conditions": [
            {"status": "ERROR", "metricKey": "bugs", "actualValue": "3", "errorThreshold": "0"}]}}
    or the plain shape:
        {"status": "pass"|"fail"|"error", "violations": [
            {"metric": "bugs", "actual": "3", "threshold": "0"}]}
    A missing or malformed report is a gate ERROR, never a pass.
    """
    name = "scan"
    required_params = frozenset({"command"})
    optional_params = frozenset({"report", "project"})
    reports_gate = True

    DEFAULT_REPORT = "quality-gate.json"

    def invoke(self, params, secrets, call):
        code = call.launch(params["command"])
        report = call.workdir / params.get("report", self.DEFAULT_REPORT)

        if not report.exists():
            detail = f"scanner exited {code} and wrote no report ({report.name})"
            return RawResult(code, gate=GateResult.error(detail))

        try:
            gate = parse_gate_report(json.loads(report.read_text(encoding="utf-8")))
        except (ValueError, KeyError, TypeError) as e:
            gate = GateResult.error(f"malformed gate report: {e}")
        return RawResult(code, gate=gate)


class DeployAdapter(Adapter):
    """
    Promote a build to a deployment target through its CLI
    (e.g. `aws lambda update-function-code ...`). Credentials arrive only
    through the step's secret bindings.
    """
    name = "deploy"
    required_params = frozenset({"command", "target"})
    optional_params = frozenset({"region"})

    def invoke(self, params, secrets, call):
        env = {"GATECI_DEPLOY_TARGET": params["target"]}
        if params.get("region"):
            env["GATECI_DEPLOY_REGION"] = params["region"]
        call.log.write(f"deploy: target={params['target']}\n")
        code = call.launch(params["command"], env=env)
        return RawResult(code, message=f"deploy to {params['target']} exited {code}")


_SONAR_FAIL = {"ERROR", "WARN"}


def parse_gate_report(data: Any) -> GateResult:
    if not isinstance(data, dict):
        raise TypeError("report root must be an object")

    if "projectStatus" in data:
        status = data["projectStatus"]
        state = str(status["status"]).upper()
        violations = tuple(
            MetricViolation(
                metric=c["metricKey"],
                actual=c.get("actualValue"),
                threshold=c.get("errorThreshold"),
            )
            for c in status.get("conditions", [])
            if str(c.get("status", "")).upper() in _SONAR_FAIL
        )
        if state == "OK":
            return GateResult.passed()
        if state in _SONAR_FAIL:
            return GateResult.failed(*violations)
        return GateResult.error(f"quality gate status {state}")

    state = str(data["status"]).lower()
    if state == "pass":
        return GateResult.passed(detail=data.get("detail", ""))
    if state == "fail":
        violations = tuple(
            MetricViolation(
                metric=v["metric"],
                actual=None if v.get("actual") is None else str(v["actual"]),
                threshold=None if v.get("threshold") is None else str(v["threshold"]),
            )
            for v in data.get("violations", [])
        )
        return GateResult.failed(*violations, detail=data.get("detail", ""))
    if state == "error":
        return GateResult.error(data.get("detail", "scanner reported an error"))
    raise ValueError(f"unknown gate status {state!r}")


def default_registry() -> AdapterRegistry:
    return AdapterRegistry([CheckoutAdapter(), BuildAdapter(), ScanAdapter(), DeployAdapter()])
