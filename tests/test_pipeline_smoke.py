import json
import re
import sys
import tempfile
import unittest
from pathlib import Path

import pandas as pd

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from demo_cell_death_pipeline import create_test_config, create_test_dataset
from run_cell_death_pipeline import CellDeathProductionPipeline, main


class PipelineSmokeTest(unittest.TestCase):
    def _run(self, root: Path, join_on=None):
        workbook = create_test_dataset(root / "input", random_seed=11)
        out_dir = root / "analysis_results"
        config_path = create_test_config(workbook, root / "config.json", output_dir=out_dir)
        pipeline = CellDeathProductionPipeline(config_path=config_path, join_on=join_on)
        return pipeline, pipeline.run(), out_dir

    def test_full_pipeline_writes_all_outputs(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pipeline, results, out_dir = self._run(Path(tmpdir))

            for key in [
                "observations_long", "condition_summary",
                "factor_model_coefficients", "log_model_coefficients",
                "factor_anova", "log_anova", "factor_emmeans", "log_emmeans",
                "group_contrasts", "time_contrasts", "significance_labels",
                "annotated_summary", "plot_by_group", "plot_by_time", "manifest",
            ]:
                self.assertIn(key, results)
                self.assertTrue(Path(results[key]).exists(), f"{key} was not written")

            summary = pd.read_csv(out_dir / "summary" / "condition_summary.csv")
            self.assertEqual(len(summary), 8 * 2 * 3)
            self.assertTrue((summary["n"] == 4).all())

            long = pd.read_csv(out_dir / "data" / "observations_long.csv")
            self.assertEqual(len(long), 8 * 2 * 3 * 4)

            labels = pd.read_csv(out_dir / "contrasts" / "significance_labels.csv")
            self.assertEqual(len(labels), 16)
            self.assertEqual(set(labels["contrast"]), {"Ven - Ven + Bia 25"})

            annotated = pipeline.state.annotated
            others = annotated[annotated["group"] != "Ven + Bia 25"]
            self.assertTrue((others["label"] == "").all())

            manifest = json.loads((out_dir / "manifest.json").read_text(encoding="utf-8"))
            self.assertEqual(manifest["data_summary"]["n_conditions"], 48)
            self.assertEqual(manifest["models"]["factor"]["n_groups"], 48)
            self.assertEqual(manifest["configuration"]["join_on"], "condition")

            logs = list((out_dir / "logs").glob("pipeline_*.log"))
            self.assertTrue(logs, "pipeline log was not created")
            log_text = logs[0].read_text(encoding="utf-8")
            match = re.search(r"Generated\s+(\d+)\s+plots", log_text)
            self.assertIsNotNone(match, "plot step did not report generated plots")
            self.assertGreater(int(match.group(1)), 0)
            self.assertIn("PIPELINE COMPLETE", log_text)

    def test_dose_time_join_labels_every_group(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pipeline, _, _ = self._run(Path(tmpdir), join_on="dose_time")

            annotated = pipeline.state.annotated
            per_condition = annotated.groupby(["dose", "time"])["label"].nunique()
            self.assertTrue((per_condition == 1).all())

    def test_pipeline_completes_with_an_empty_condition(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            workbook = create_test_dataset(root / "input", random_seed=11)
            wide = pd.read_excel(workbook, sheet_name="CellDeath")
            cell = (
                (wide["Group"] == "Ven + Bia 25")
                & (wide["Time"] == "48h")
                & (wide["Dose"] == wide["Dose"].max())
            )
            wide.loc[cell, ["Rep1", "Rep2", "Rep3", "Rep4"]] = float("nan")
            wide.to_excel(workbook, sheet_name="CellDeath", index=False)

            out_dir = root / "analysis_results"
            config_path = create_test_config(workbook, root / "config.json", output_dir=out_dir)
            pipeline = CellDeathProductionPipeline(config_path=config_path)
            pipeline.run()

            self.assertEqual(len(pipeline.state.labels), 15)
            self.assertEqual(len(pipeline.state.factor_model.dropped_columns), 1)
            annotated = pipeline.state.annotated
            empty = annotated[annotated["n"] == 0]
            self.assertEqual(len(empty), 1)
            self.assertEqual(empty["label"].item(), "")

            manifest = json.loads((out_dir / "manifest.json").read_text(encoding="utf-8"))
            self.assertEqual(len(manifest["models"]["factor"]["dropped_columns"]), 1)
            self.assertEqual(manifest["models"]["log"]["dropped_columns"], [])

            log_text = next((out_dir / "logs").glob("pipeline_*.log")).read_text(encoding="utf-8")
            self.assertIn("aliased fixed-effect columns", log_text)
            self.assertIn("have no significance label", log_text)
            self.assertIn("PIPELINE COMPLETE", log_text)

    def test_cli_exits_on_missing_config(self):
        with self.assertRaises(SystemExit):
            main(["does_not_exist.json"])


if __name__ == "__main__":
    unittest.main()
