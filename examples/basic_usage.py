"""
Example: Basic Web API usage with simple_dynamics
=================================================

This example shows CRUD, paged queries, relationships and $batch.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from simple_dynamics import (
    BatchInstruction,
    ConnectionContext,
    DynamicsConfig,
    DynamicsSession,
    DynamicsUpstreamError,
    EntityReference,
)
from simple_dynamics.odata import DynamicsService, add_single_reference


@dataclass
class Account:
    accountid: str
    name: str
    telephone1: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        return cls(data["accountid"], data.get("name", ""), data.get("telephone1"))


def example_crud():
    """Create, read, update and delete an account."""

    cfg = DynamicsConfig(
        base_url="https://contoso.crm4.dynamics.com",
        tenant_id="<tenant-id>",
        application_id="<client-id>",
        application_secret="<client-secret>",
        plural_overrides={"gp_person": "gp_people"},
    )

    with DynamicsSession(cfg) as sess:
        api = DynamicsService(sess)

        account_id = api.create("account", {"name": "Contoso", "telephone1": None})
        print("Created", account_id)

        account = api.retrieve("account", account_id, "?$select=name,telephone1", model=Account.from_dict)
        print(account)

        api.update("account", account_id, {"telephone1": "555-0100"})

        contact = add_single_reference({"lastname": "Doe"}, "parentcustomerid_account", "accounts", account_id)
        api.create("contact", contact)

        contacts = api.get_children("contact", "_parentcustomerid_value", account_id, ["fullname"])
        print(f"{len(contacts)} contacts")

        api.delete("account", account_id)


def example_paging_and_relationships():
    """Page through accounts and manage an N:N relationship."""

    # Reads DYNAMICS_* variables, optionally from a .env file
    with ConnectionContext(env_file=".env") as conn:
        api = conn.get_service()

        accounts = api.retrieve_all("account", "?$select=name", page_size=500)
        print(f"Found {len(accounts)} accounts")

        parent = EntityReference(accounts[0]["accountid"], "account")
        tags = [EntityReference("<tag-id>", "gp_tag")]
        api.add_relationship(parent, tags, "gp_account_gp_tag")
        print(api.get_related(parent, "gp_account_gp_tag", ["gp_name"]))
        api.remove_relationship(parent, "gp_account_gp_tag", "<tag-id>")

        results = api.execute_batch_decoded([
            BatchInstruction("POST", "/api/data/v9.2/accounts", {"name": "Batch A"}),
            BatchInstruction("POST", "/api/data/v9.2/accounts", {"name": "Batch B"}),
        ])
        for part in results:
            print(part.status, part.headers.get("OData-EntityId"))

        try:
            api.retrieve("account", "00000000-0000-0000-0000-000000000000")
        except DynamicsUpstreamError as exc:
            print("Lookup failed with", exc.status)


if __name__ == "__main__":
    example_crud()
