import importlib.util
import json
from pathlib import Path

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "parse_ai_response.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("parse_ai_response", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_parses_file_with_fallback(tmp_path, capsys):
    response = tmp_path / "response.txt"
    response.write_text("the model rambled", encoding="utf-8")

    exit_code = _load_script().main([str(response), "--original", "cf 25k, taxi 50k", "--postprocess"])

    captured = capsys.readouterr()
    payload = json.loads(captured.out)
    assert exit_code == 0
    assert [t["amount"] for t in payload["transactions"]] == [25000, 50000]
    assert payload["transaction_summary"]["total"] == 2
    assert "strategy=fallback" in captured.err


def test_failure_exit_code(tmp_path, capsys):
    response = tmp_path / "response.txt"
    response.write_text("nothing useful", encoding="utf-8")

    exit_code = _load_script().main([str(response)])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 1
    assert payload["parsing_metadata"]["parsing_quality"] == "failed"
