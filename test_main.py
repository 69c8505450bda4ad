import json

import matplotlib

matplotlib.use("Agg")

import main
from netstack_sim.core.simulator import NetworkSimulator, chain_topology
from netstack_sim.utils.metrics import routing_tables, save_metrics_to_json
from netstack_sim.utils.visualization import plot_node_counters, save_network_visualization


def test_main_runs_receiver_node(tmp_path, capsys):
    status = main.main(
        ["2", "3", "2", "1", "--channel-dir", str(tmp_path), "--time-factor", "0.001",
         "--log-level", "WARNING"]
    )
    assert status == 0
    assert (tmp_path / "from2to1.txt").exists()
    assert (tmp_path / "from1to2.txt").exists()


def test_main_reports_unavailable_channel(tmp_path):
    status = main.main(
        ["2", "3", "2", "1", "--channel-dir", str(tmp_path / "missing"), "--time-factor", "0.001"]
    )
    assert status == 1


def test_main_rejects_bad_configuration(capsys):
    assert main.main(["11", "3", "2", "1"]) == 2
    assert "Error" in capsys.readouterr().err


def test_main_rejects_unknown_log_level(tmp_path, capsys):
    status = main.main(["2", "3", "2", "1", "--channel-dir", str(tmp_path), "--log-level", "LOUD"])
    assert status == 2
    assert "log level" in capsys.readouterr().err


def run_hello():
    sim = NetworkSimulator.from_edges(chain_topology(3), {0: (2, "HELLO!", 8)}, payload_size=4)
    sim.run(12)
    return sim


def test_routing_tables_are_readable():
    tables = routing_tables(run_hello())
    assert tables[0][2] == "0->1->2"
    assert tables[2][0] == "2->1->0"
    assert tables[0][5] == "?"


def test_save_metrics_to_json(tmp_path):
    sim = run_hello()
    filename = tmp_path / "results" / "metrics.json"
    save_metrics_to_json(sim.metrics, str(filename))
    saved = json.loads(filename.read_text())
    assert saved["messages_delivered"] == 1
    assert saved["bytes_per_link"]["0->1"] > 0


def test_visualizations_are_saved(tmp_path):
    sim = run_hello()
    save_network_visualization(sim, str(tmp_path / "network.png"))
    plot_node_counters(sim, output_dir=str(tmp_path))
    assert (tmp_path / "network.png").exists()
    assert (tmp_path / "node_counters.png").exists()
