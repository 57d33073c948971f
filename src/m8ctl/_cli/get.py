"""Commands reading resources from the control plane."""

import typer

from m8ctl._cli._common import exit_on_error, get_config_manager
from m8ctl.auth import Deadline, retry_on_auth_fail_silently
from m8ctl.cluster_credentials import ClusterCredentialBroker, render_exec_credential
from m8ctl.config import get_settings
from m8ctl.gateway import GatewayClient

app = typer.Typer(help="Get resources from the control plane")


@app.command("cluster-credentials")
def cluster_credentials(
    ctx: typer.Context,
    cluster: str = typer.Argument(..., help="ID of the cluster"),
    role: str = typer.Argument(..., help="Kubernetes role, e.g. 'default' or 'admin'"),
) -> None:
    """Get credentials for a cluster known to the control plane.

    Prints a client.authentication.k8s.io/v1beta1 ExecCredential, so this
    command can be used as a kubectl exec credential plugin.
    """
    if not cluster:
        raise typer.BadParameter("cluster must be specified", param_hint="CLUSTER")
    if not role:
        raise typer.BadParameter("role must be specified", param_hint="ROLE")

    manager = get_config_manager(ctx)
    settings = get_settings()

    def operation(deadline: Deadline) -> None:
        with GatewayClient.from_config(
            manager.config, timeout=settings.api_timeout
        ) as gateway, ClusterCredentialBroker(
            manager, gateway, api_timeout=settings.api_timeout
        ) as broker:
            auth = broker.resolve(
                cluster, role, deadline=deadline, wait_for_prefetch=False
            )
            # kubectl reads exactly this document from stdout
            typer.echo(render_exec_credential(auth))

    with exit_on_error(retried=True):
        retry_on_auth_fail_silently(manager, operation)
