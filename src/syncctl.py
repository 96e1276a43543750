#!/usr/bin/env python3
"""
CLI tool for addonsync
Lists groups, shows and heals user sync status, and edits per-user addon sets
"""

import json
import os
import sys

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("SYNCCTL_API_URL", "http://localhost:8000/api/v1")


class AddonSyncCLI:
    """CLI client for the addonsync API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, timeout=60, **kwargs)
            response.raise_for_status()
            if response.status_code == 204:
                return {}
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def request_or_exit(self, method: str, endpoint: str, **kwargs):
        result = self._make_request(method, endpoint, **kwargs)
        if result is None:
            sys.exit(1)
        return result


def load_document(filename: str):
    """Read a YAML or JSON file"""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return yaml.safe_load(f)
        return json.load(f)


def print_verdict(verdict: dict) -> None:
    click.echo(f"Status: {verdict['status']}")
    reasons = verdict.get("reasons") or []
    if reasons:
        click.echo(tabulate([[r] for r in reasons], headers=["Reason"], tablefmt="grid"))


@click.group()
@click.option("--api-url", default=API_BASE_URL, help="Base URL of the addonsync API")
@click.pass_context
def cli(ctx, api_url):
    """addonsync CLI - manage addon groups and user sync status"""
    ctx.obj = AddonSyncCLI(api_url)


@cli.command()
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def groups(client, output):
    """List groups"""
    result = client.request_or_exit("GET", "/groups")

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    rows = [
        [g["id"], g["name"], g["member_count"], g.get("description") or ""]
        for g in result
    ]
    click.echo(
        tabulate(rows, headers=["ID", "Name", "Members", "Description"], tablefmt="grid")
    )


@cli.command()
@click.argument("user_id", type=int)
@click.option("--force", is_flag=True, help="Bypass the remote state cache")
@click.option("--output", "-o", type=click.Choice(["summary", "json"]), default="summary")
@click.pass_obj
def status(client, user_id, force, output):
    """Show a user's sync status"""
    result = client.request_or_exit(
        "GET", f"/users/{user_id}/sync-status", params={"force": str(force).lower()}
    )

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    click.echo(f"User: {result['user_id']}")
    if result.get("verdict"):
        print_verdict({**result["verdict"], "status": result["status"]})
    else:
        click.echo(f"Status: {result['status']}")
    if result.get("message"):
        click.echo(f"Message: {result['message']}")


@cli.command()
@click.argument("user_id", type=int)
@click.pass_obj
def sync(client, user_id):
    """Install the group's addons on a user's account"""
    client.request_or_exit("POST", f"/users/{user_id}/sync")
    click.echo(f"User {user_id} synced")


@cli.command()
@click.argument("user_id", type=int)
@click.pass_obj
def remote(client, user_id):
    """List the addons installed on a user's account"""
    result = client.request_or_exit("GET", f"/users/{user_id}/remote-addons")

    rows = [
        [i, a.get("name") or "", a["key"], a.get("protection") or ""]
        for i, a in enumerate(result)
    ]
    click.echo(
        tabulate(rows, headers=["#", "Name", "Key", "Protected"], tablefmt="grid")
    )


@cli.command()
@click.argument("user_id", type=int)
@click.argument("key")
@click.pass_obj
def exclude(client, user_id, key):
    """Toggle exclusion of a group addon for a user"""
    result = client.request_or_exit(
        "POST", f"/users/{user_id}/excluded-addons/toggle", json={"key": key}
    )
    state = "excluded" if key.strip().lower() in result["keys"] else "included"
    click.echo(f"{key}: {state}")


@cli.command()
@click.argument("user_id", type=int)
@click.argument("key")
@click.pass_obj
def protect(client, user_id, key):
    """Toggle protection of an addon for a user"""
    result = client.request_or_exit(
        "POST", f"/users/{user_id}/protected-addons/toggle", json={"key": key}
    )
    state = "protected" if key.strip().lower() in result["keys"] else "unprotected"
    click.echo(f"{key}: {state}")


@cli.command()
@click.argument("user_id", type=int)
@click.argument("keys", nargs=-1, required=True)
@click.pass_obj
def reorder(client, user_id, keys):
    """Move addons to the front of a user's account, in the given order"""
    result = client.request_or_exit(
        "PUT", f"/users/{user_id}/remote-addons/order", json={"keys": list(keys)}
    )
    for i, key in enumerate(result["order"]):
        click.echo(f"{i:>3}  {key}")


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Choice(["summary", "json"]), default="summary")
@click.pass_obj
def evaluate(client, filename, output):
    """Evaluate desired/remote addons from a YAML/JSON file"""
    data = load_document(filename) or {}
    payload = {
        "desired": data.get("desired", []),
        "remote": data.get("remote", []),
        "protected": data.get("protected", []),
    }
    if "mode" in data:
        payload["mode"] = data["mode"]

    result = client.request_or_exit("POST", "/evaluate", json=payload)

    if output == "json":
        click.echo(json.dumps(result, indent=2))
    else:
        print_verdict(result)


if __name__ == "__main__":
    cli()
