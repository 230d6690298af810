"""Tests for planning and plan rendering."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from provisioner.expressions import UNKNOWN
from provisioner.models import ConfigDocument, Configuration
from provisioner.planner import (
    Action,
    Plan,
    PlanError,
    Planner,
    StalePlanError,
    refresh_state,
    render_plan,
)
from provisioner.providers import AzureProvider, resource_group_id, subnet_id, virtual_network_id
from provisioner.state import State

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"
VARIABLES = {"location": "westeurope", "subnet_prefix": "10.0.1.0/24"}

RG = "azurerm_resource_group.main"
VNET = "azurerm_virtual_network.main"
SUBNET = "azurerm_subnet.app"


def configuration(document: dict[str, Any]) -> Configuration:
    return Configuration.from_documents([ConfigDocument.model_validate(document)])


def applied_state() -> State:
    """State as it looks after the network configuration was applied."""
    state = State(serial=4)
    state.set_resource(
        "azurerm_resource_group",
        "main",
        {
            "id": resource_group_id(SUBSCRIPTION_ID, "rg-network"),
            "name": "rg-network",
            "location": "westeurope",
            "tags": {},
        },
    )
    state.set_resource(
        "azurerm_virtual_network",
        "main",
        {
            "id": virtual_network_id(SUBSCRIPTION_ID, "rg-network", "vnet-main"),
            "name": "vnet-main",
            "address_space": ["10.0.0.0/16"],
            "location": "westeurope",
            "resource_group_name": "rg-network",
            "tags": {},
        },
        dependencies=[RG],
    )
    state.set_resource(
        "azurerm_subnet",
        "app",
        {
            "id": subnet_id(SUBSCRIPTION_ID, "rg-network", "vnet-main", "snet-app"),
            "name": "snet-app",
            "address_prefixes": ["10.0.1.0/24"],
            "resource_group_name": "rg-network",
            "virtual_network_name": "vnet-main",
        },
        dependencies=[RG, VNET],
    )
    return state


def actions(plan: Plan) -> dict[str, Action]:
    return {change.address: change.action for change in plan.changes}


class TestPlanCreate:
    """Tests for planning against empty state."""

    @pytest.mark.asyncio
    async def test_creates_in_dependency_order(self, network_document: dict) -> None:
        """Test that every resource is created, parents first."""
        plan = await Planner().plan(configuration(network_document), State(), VARIABLES)

        assert [c.address for c in plan.changes] == [RG, VNET, SUBNET]
        assert all(c.action == Action.CREATE for c in plan.changes)
        assert plan.summary() == "Plan: 3 to add, 0 to change, 0 to destroy."

    @pytest.mark.asyncio
    async def test_planned_values(self, network_document: dict) -> None:
        """Test that references between new resources resolve where known."""
        plan = await Planner().plan(configuration(network_document), State(), VARIABLES)

        subnet = next(c for c in plan.changes if c.address == SUBNET)
        assert subnet.after["resource_group_name"] == "rg-network"
        assert subnet.after["virtual_network_name"] == "vnet-main"
        assert subnet.dependencies == [RG, VNET]
        assert plan.outputs["vnet_name"] == "vnet-main"
        assert plan.outputs["subnet_id"] is UNKNOWN

    @pytest.mark.asyncio
    async def test_plan_records_state_identity(self, network_document: dict) -> None:
        """Test that the plan remembers lineage and serial."""
        state = State(serial=7)

        plan = await Planner().plan(configuration(network_document), state, VARIABLES)

        assert plan.lineage == state.lineage
        assert plan.serial == 7

    @pytest.mark.asyncio
    async def test_invalid_resolved_argument(self, network_document: dict) -> None:
        """Test that values invalid after resolution fail the plan."""
        variables = {**VARIABLES, "subnet_prefix": "10.0.1.0"}

        with pytest.raises(PlanError) as exc_info:
            await Planner().plan(configuration(network_document), State(), variables)

        assert "azurerm_subnet.app: invalid arguments" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_dangling_reference(self, network_document: dict) -> None:
        """Test that reference errors are reported as PlanError."""
        network_document["output"]["bad"] = {"value": "${var.undeclared}"}

        with pytest.raises(PlanError):
            await Planner().plan(configuration(network_document), State(), VARIABLES)


class TestPlanChanges:
    """Tests for planning against existing state."""

    @pytest.mark.asyncio
    async def test_no_changes(self, network_document: dict) -> None:
        """Test that matching state plans nothing."""
        plan = await Planner().plan(
            configuration(network_document), applied_state(), VARIABLES, refresh=False
        )

        assert not plan.has_changes
        assert set(actions(plan).values()) == {Action.NO_OP}
        assert plan.outputs["subnet_id"].endswith("/subnets/snet-app")
        assert "No changes" in render_plan(plan)

    @pytest.mark.asyncio
    async def test_update_in_place(self, network_document: dict) -> None:
        """Test that updatable arguments change in place."""
        vnet = network_document["resource"]["azurerm_virtual_network"]["main"]
        vnet["address_space"] = ["10.0.0.0/16", "10.1.0.0/16"]

        plan = await Planner().plan(
            configuration(network_document), applied_state(), VARIABLES, refresh=False
        )

        assert actions(plan) == {RG: Action.NO_OP, VNET: Action.UPDATE, SUBNET: Action.NO_OP}
        change = next(c for c in plan.changes if c.address == VNET)
        assert change.changed_attributes == ["address_space"]
        assert plan.summary() == "Plan: 0 to add, 1 to change, 0 to destroy."

    @pytest.mark.asyncio
    async def test_force_new_replaces(self, network_document: dict) -> None:
        """Test that renaming a subnet replaces only the subnet."""
        network_document["resource"]["azurerm_subnet"]["app"]["name"] = "snet-web"

        plan = await Planner().plan(
            configuration(network_document), applied_state(), VARIABLES, refresh=False
        )

        assert actions(plan) == {RG: Action.NO_OP, VNET: Action.NO_OP, SUBNET: Action.REPLACE}
        change = next(c for c in plan.changes if c.address == SUBNET)
        assert change.replace_reasons == ["name changes from 'snet-app' to 'snet-web'"]

    @pytest.mark.asyncio
    async def test_replace_cascades_to_children(self, network_document: dict) -> None:
        """Test that replacing a resource group replaces what it contains."""
        variables = {**VARIABLES, "location": "northeurope"}

        plan = await Planner().plan(
            configuration(network_document), applied_state(), variables, refresh=False
        )

        assert actions(plan) == {RG: Action.REPLACE, VNET: Action.REPLACE, SUBNET: Action.REPLACE}
        subnet = next(c for c in plan.changes if c.address == SUBNET)
        assert any("which is replaced" in r for r in subnet.replace_reasons)
        assert plan.summary() == "Plan: 3 to add, 0 to change, 3 to destroy."

    @pytest.mark.asyncio
    async def test_removed_resource_deleted(self, network_document: dict) -> None:
        """Test that resources dropped from configuration are deleted."""
        del network_document["resource"]["azurerm_subnet"]
        del network_document["output"]["subnet_id"]

        plan = await Planner().plan(
            configuration(network_document), applied_state(), VARIABLES, refresh=False
        )

        assert actions(plan)[SUBNET] == Action.DELETE
        assert plan.destroy_count == 1

    @pytest.mark.asyncio
    async def test_destroy_mode(self, network_document: dict) -> None:
        """Test that destroy plans delete everything in state."""
        plan = await Planner().plan(
            configuration(network_document),
            applied_state(),
            VARIABLES,
            refresh=False,
            destroy=True,
        )

        assert set(actions(plan).values()) == {Action.DELETE}
        assert plan.destroy
        assert plan.summary() == "Plan: 0 to add, 0 to change, 3 to destroy."

    @pytest.mark.asyncio
    async def test_prevent_destroy(self, network_document: dict) -> None:
        """Test that protected resources cannot be destroyed."""
        rg = network_document["resource"]["azurerm_resource_group"]["main"]
        rg["lifecycle"] = {"prevent_destroy": True}

        with pytest.raises(PlanError) as exc_info:
            await Planner().plan(
                configuration(network_document),
                applied_state(),
                VARIABLES,
                refresh=False,
                destroy=True,
            )

        assert "prevent_destroy" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_prevent_destroy_allows_updates(self, network_document: dict) -> None:
        """Test that protected resources can still be planned in place."""
        rg = network_document["resource"]["azurerm_resource_group"]["main"]
        rg["lifecycle"] = {"prevent_destroy": True}
        rg["tags"] = {"env": "prod"}

        plan = await Planner().plan(
            configuration(network_document), applied_state(), VARIABLES, refresh=False
        )

        assert actions(plan)[RG] == Action.UPDATE


class TestRefresh:
    """Tests for refreshing state from Azure."""

    @pytest.mark.asyncio
    async def test_drift_recreates(self, network_document: dict, provider: AzureProvider) -> None:
        """Test that resources deleted out of band are planned again."""
        plan = await Planner(provider).plan(
            configuration(network_document), applied_state(), VARIABLES
        )

        assert set(actions(plan).values()) == {Action.CREATE}

    @pytest.mark.asyncio
    async def test_refresh_reads_current_attributes(self, provider: AzureProvider) -> None:
        """Test that refresh replaces recorded attributes with live ones."""
        state = applied_state()
        rg = state.attributes(RG)
        await provider.create("azurerm_resource_group", {**rg, "tags": {"owner": "ops"}})

        refreshed = await refresh_state(state, provider)

        assert refreshed.attributes(RG)["tags"] == {"owner": "ops"}
        assert refreshed.addresses() == [RG]
        assert state.addresses() == [RG, SUBNET, VNET]


class TestPlanFile:
    """Tests for saved plans."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path: Path, network_document: dict) -> None:
        """Test that a saved plan keeps unknown values and state identity."""
        plan = await Planner().plan(configuration(network_document), State(), VARIABLES)
        path = tmp_path / "tfplan"

        plan.save(path)
        loaded = Plan.load(path)

        assert loaded.lineage == plan.lineage
        assert [c.action for c in loaded.changes] == [c.action for c in plan.changes]
        assert loaded.outputs["subnet_id"] is UNKNOWN
        assert loaded.changes[0].config == plan.changes[0].config

    def test_load_invalid(self, tmp_path: Path) -> None:
        """Test that a file that is not a plan raises PlanError."""
        path = tmp_path / "tfplan"
        path.write_text('{"format_version": 99}')

        with pytest.raises(PlanError) as exc_info:
            Plan.load(path)

        assert "Unsupported plan format version" in str(exc_info.value)

    def test_check_current(self) -> None:
        """Test that plans only apply to the state they were made for."""
        state = State(serial=2, lineage="lineage-a")
        plan = Plan(changes=[], lineage="lineage-a", serial=2)

        plan.check_current(state)

        state.serial = 3
        with pytest.raises(StalePlanError) as exc_info:
            plan.check_current(state)
        assert "stale" in str(exc_info.value)

        with pytest.raises(StalePlanError) as exc_info:
            plan.check_current(State(serial=2, lineage="lineage-b"))
        assert "different state" in str(exc_info.value)


class TestRenderPlan:
    """Tests for render_plan."""

    @pytest.mark.asyncio
    async def test_render_create(self, network_document: dict) -> None:
        """Test rendering of new resources."""
        plan = await Planner().plan(configuration(network_document), State(), VARIABLES)

        text = render_plan(plan)

        assert "# azurerm_resource_group.main will be created" in text
        assert '+ resource "azurerm_subnet" "app" {' in text
        assert '+ name = "snet-app"' in text
        assert "+ id = (known after apply)" in text
        assert text.endswith("Plan: 3 to add, 0 to change, 0 to destroy.")

    @pytest.mark.asyncio
    async def test_render_replace(self, network_document: dict) -> None:
        """Test rendering of replacements with reasons."""
        network_document["resource"]["azurerm_subnet"]["app"]["name"] = "snet-web"
        plan = await Planner().plan(
            configuration(network_document), applied_state(), VARIABLES, refresh=False
        )

        text = render_plan(plan)

        assert "# azurerm_subnet.app must be replaced" in text
        assert "-/+ resource" in text
        assert '~ name = "snet-app" -> "snet-web"' in text
