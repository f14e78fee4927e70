#!/usr/bin/env python3
"""
Agent Setup Script

Deploys a small agent against a running agentflow server, runs it once and
optionally activates its time loop trigger.

Usage:
    python setup_agent.py [--base-url URL] [--activate] [--seconds N]

Examples:
    python setup_agent.py
    python setup_agent.py --base-url http://localhost:8000 --activate --seconds 5
"""

import argparse
import json
import requests
import sys


DEFAULT_BASE_URL = "http://localhost:8000"


def api_post(base_url: str, endpoint: str, data: dict = None) -> dict:
    """Make a POST request to the API"""
    url = f"{base_url}{endpoint}"
    try:
        response = requests.post(url, json=data or {})
        response.raise_for_status()
        return response.json()
    except requests.exceptions.ConnectionError:
        print(f"ERROR: Cannot connect to {base_url}")
        print("Make sure the agentflow server is running.")
        sys.exit(1)
    except requests.exceptions.HTTPError as e:
        print(f"ERROR: {e}")
        print(f"Response: {response.text}")
        return None


def list_agents(base_url: str):
    """List all deployed agents"""
    print("\n=== Deployed Agents ===")
    result = api_post(base_url, "/agents/list")
    if result and result.get("agents"):
        for agent in result["agents"]:
            status = "active" if agent.get("is_active") else "inactive"
            print(f"  [{status:8}] {agent.get('id', '?')} {agent.get('name', '?')}")
    else:
        print("  (no agents deployed)")
    print()


def sample_flow(seconds: int) -> dict:
    """Time loop -> comparator -> display, with the comparator reading the tick count"""
    return {
        "nodes": [
            {"id": "loop"   , "blockType": "timeLoop"         , "position": {"x": 0  , "y": 0}, "data": {"seconds": str(seconds)}},
            {"id": "compare", "blockType": "generalComparator", "position": {"x": 250, "y": 0}, "data": {
                "valueToFilterTop"    : "{{loop.count}}",
                "operator"            : "greater_than",
                "valueToFilterBottom" : "2",
            }},
            {"id": "show"   , "blockType": "streamDisplay"    , "position": {"x": 500, "y": 0}, "data": {
                "inputSources": {"data": {"sourceNodeId": "compare", "outputName": "passed"}},
            }},
        ],
        "edges": [
            {"id": "e1", "source": "loop"   , "target": "compare", "sourceHandle": "exec-out", "targetHandle": "exec-in"},
            {"id": "e2", "source": "compare", "target": "show"   , "sourceHandle": "exec-out", "targetHandle": "exec-in"},
        ],
    }


def deploy_agent(base_url: str, name: str, seconds: int) -> str:
    print(f"Deploying agent: {name}")
    result = api_post(base_url, "/agents/deploy", {
        "name"        : name,
        "description" : "Compares the tick count of a time loop",
        "flow"        : sample_flow(seconds),
    })
    if not result:
        sys.exit(1)
    agent = result["agent"]
    print(f"  -> Deployed: {agent['id']} ({len(agent['model']['nodes'])} nodes)")
    return agent["id"]


def run_agent(base_url: str, agent_id: str):
    print(f"Running agent once: {agent_id}")
    result = api_post(base_url, f"/agents/run/{agent_id}", {
        "nodeId"         : "loop",
        "triggerOutputs" : {"elapsed": "0s", "count": "3"},
    })
    if result:
        run = result["run"]
        print(f"  -> Run {run['run_id']}: {run['status']}")
        print(json.dumps(run["outputs"], indent=2))


def main():
    parser = argparse.ArgumentParser(description="Deploy a sample agentflow agent")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL, help="Server base URL")
    parser.add_argument("--name"    , default="tick-watcher"  , help="Agent name")
    parser.add_argument("--seconds" , type=int, default=5     , help="Time loop interval")
    parser.add_argument("--activate", action="store_true"     , help="Activate the time loop after the test run")
    args = parser.parse_args()

    agent_id = deploy_agent(args.base_url, args.name, args.seconds)
    run_agent(args.base_url, agent_id)

    if args.activate:
        result = api_post(args.base_url, f"/agents/activate/{agent_id}")
        if result:
            print(f"  -> Activated: {result.get('status')}")

    list_agents(args.base_url)

    print("Connect to WebSocket at ws://localhost:8000/events to watch runs.")


if __name__ == "__main__":
    main()
