"""
CLI argument parsing and main function tests.

Tests command-line interface, argument validation,
and program entry points.
"""

import json
from unittest.mock import patch

import pytest

from list_builder import JobConfig, build_arg_parser, main


@pytest.mark.unit
class TestArgumentParser:
    """Test CLI argument parsing."""

    def test_create_job_arguments(self):
        args = build_arg_parser().parse_args([
            "--create-job",
            "--tenant", "recTENANT",
            "--titles", "Head of Talent", "CTO",
            "--sizes", "51,200",
            "--locations", "United States",
            "--keywords", "recruiter",
            "--limit", "25",
            "--run",
        ])

        assert args.create_job and args.run
        assert args.titles == ["Head of Talent", "CTO"]
        assert args.sizes == ["51,200"]
        assert args.limit == 25

    def test_defaults(self):
        args = build_arg_parser().parse_args(["--job-id", "job-1"])

        assert args.job_id == "job-1"
        assert args.titles == []
        assert args.limit is None
        assert args.output is None

    def test_rejects_bad_log_level(self):
        with pytest.raises(SystemExit):
            build_arg_parser().parse_args(["--job-id", "x", "--log-level", "LOUD"])


@pytest.mark.unit
class TestMain:
    """Test main() dispatch and exit codes."""

    def test_requires_an_action(self):
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 2

    def test_create_job_requires_tenant_and_limit(self):
        with pytest.raises(SystemExit):
            main(["--create-job", "--limit", "5"])

    @patch("list_builder.ListBuildingOrchestrator")
    def test_job_id_success(self, mock_orchestrator, capsys):
        mock_orchestrator.return_value.handle_trigger.return_value = (
            200,
            {"success": True, "message": "List building process completed."},
        )

        assert main(["--job-id", "job-1"]) == 0

        mock_orchestrator.return_value.handle_trigger.assert_called_once_with({"jobId": "job-1"})
        assert json.loads(capsys.readouterr().out)["success"] is True

    @patch("list_builder.ListBuildingOrchestrator")
    def test_job_id_failure_exit_code(self, mock_orchestrator, tmp_path):
        mock_orchestrator.return_value.handle_trigger.return_value = (400, {"error": "Job Not Found", "details": "x"})
        output = tmp_path / "result.json"

        assert main(["--job-id", "job-1", "--output", str(output)]) == 1

        assert json.loads(output.read_text())["error"] == "Job Not Found"

    @patch("list_builder.ListBuildingOrchestrator")
    def test_create_job_without_run(self, mock_orchestrator, capsys):
        store = mock_orchestrator.return_value.store
        store.create_job.return_value = {"id": "job-9", "status": "pending"}

        code = main([
            "--create-job", "--tenant", "recTENANT", "--titles", "CTO", "--limit", "5",
        ])

        assert code == 0
        tenant, job_config = store.create_job.call_args[0]
        assert tenant == "recTENANT"
        assert isinstance(job_config, JobConfig)
        assert job_config.target_titles == ("CTO",)
        assert job_config.result_limit == 5
        mock_orchestrator.return_value.handle_trigger.assert_not_called()
        assert json.loads(capsys.readouterr().out)["id"] == "job-9"

    @patch("list_builder.ListBuildingOrchestrator")
    def test_create_job_and_run(self, mock_orchestrator):
        mock_orchestrator.return_value.store.create_job.return_value = {"id": "job-9"}
        mock_orchestrator.return_value.handle_trigger.return_value = (200, {"success": True})

        assert main(["--create-job", "--tenant", "recT", "--limit", "1", "--run"]) == 0

        mock_orchestrator.return_value.handle_trigger.assert_called_once_with({"jobId": "job-9"})

    @patch("list_builder.ListBuildingOrchestrator")
    def test_create_job_with_negative_limit_fails(self, mock_orchestrator):
        assert main(["--create-job", "--tenant", "recT", "--limit", "-1"]) == 1

        mock_orchestrator.return_value.store.create_job.assert_not_called()

    @patch("list_builder.PendingJobProcessor")
    @patch("list_builder.ListBuildingOrchestrator")
    def test_process_pending(self, mock_orchestrator, mock_processor, capsys):
        mock_processor.return_value.process.return_value = [("job-1", 200), ("job-2", 400)]

        assert main(["--process-pending", "--limit", "3"]) == 1

        mock_processor.return_value.process.assert_called_once_with(limit=3)
        assert json.loads(capsys.readouterr().out) == [
            {"job_id": "job-1", "status_code": 200},
            {"job_id": "job-2", "status_code": 400},
        ]

    @patch("list_builder.PendingJobProcessor")
    @patch("list_builder.ListBuildingOrchestrator")
    def test_process_pending_defaults_to_one(self, mock_orchestrator, mock_processor):
        mock_processor.return_value.process.return_value = []

        assert main(["--process-pending"]) == 0

        mock_processor.return_value.process.assert_called_once_with(limit=1)

    @patch("list_builder.RecordsStoreClient")
    def test_list_tenants(self, mock_records, capsys):
        mock_records.return_value.list_tenants.return_value = [{"id": "rec1", "name": "Acme"}]

        assert main(["--list-tenants"]) == 0

        assert json.loads(capsys.readouterr().out) == [{"id": "rec1", "name": "Acme"}]

    @patch("list_builder.ListBuildingOrchestrator", side_effect=ValueError("Missing required configuration: SUPABASE_URL"))
    def test_fatal_config_error(self, mock_orchestrator):
        assert main(["--job-id", "job-1"]) == 1
