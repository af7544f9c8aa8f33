import json
from pathlib import Path

from layerkit.observability import StructuredLogger


def test_logger_filters_by_stage_and_exports_json_lines(tmp_path: Path) -> None:
    logger = StructuredLogger()
    logger.log(
        operation="recipe_generated",
        stage="plan",
        toolchain="cargo",
        message="Generated dependency recipe.",
        extra={"digest": "abc"},
    )
    logger.log(
        operation="stage_failed",
        stage="compile",
        toolchain="cargo",
        message="Application compilation failed.",
        level="error",
    )

    assert [r["operation"] for r in logger.records_for_stage("compile")] == ["stage_failed"]
    path = logger.to_json_lines(tmp_path / "logs" / "logs.jsonl")
    records = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert records[0] == {
        "extra": {"digest": "abc"},
        "level": "info",
        "message": "Generated dependency recipe.",
        "operation": "recipe_generated",
        "stage": "plan",
        "toolchain": "cargo",
    }
    assert records[1]["level"] == "error"
    assert "extra" not in records[1]
