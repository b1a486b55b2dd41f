"""
Tests for the engine facade: outputs and state inspection.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from strata.core.exceptions import ParseError
from strata.engine.engine import Engine
from strata.providers.local import LocalProvider

WITH_OUTPUTS = """
variables:
  env:
    default: ci
resources:
  network:
    main:
      cidr_block: 10.0.0.0/16
      tags: {Env: "${var.env}"}
  subnet:
    public:
      network_id: ${network.main.id}
      cidr_block: 10.0.1.0/24
outputs:
  network_id:
    value: ${network.main.id}
  zone:
    value: "${subnet.public.availability_zone} (${var.env})"
  ids:
    value: ["${network.main.id}", "${subnet.public.id}"]
    sensitive: true
"""


@pytest.mark.asyncio
async def test_outputs_stored_after_apply(engine: Engine, provider: LocalProvider, write_declaration) -> None:
    _, result = await engine.apply(write_declaration(WITH_OUTPUTS))
    assert result.success

    network_id = provider.find_id("network.main")
    subnet_id = provider.find_id("subnet.public")
    assert (await engine.output("network_id")).value == network_id
    assert (await engine.output("zone")).value == "local-1a (ci)"
    ids = await engine.output("ids")
    assert ids.value == [network_id, subnet_id]
    assert ids.sensitive
    assert await engine.output("missing") is None
    assert sorted(o.name for o in await engine.outputs()) == ["ids", "network_id", "zone"]


@pytest.mark.asyncio
async def test_variables_override_defaults(engine: Engine, write_declaration) -> None:
    path = write_declaration(WITH_OUTPUTS)
    await engine.apply(path, variables={"env": "prod"})

    assert (await engine.output("zone")).value == "local-1a (prod)"
    record = await engine.state_show("network.main")
    assert record.attributes["tags"] == {"Env": "prod"}


@pytest.mark.asyncio
async def test_destroy_clears_outputs(engine: Engine, write_declaration) -> None:
    await engine.apply(write_declaration(WITH_OUTPUTS))

    _, result = await engine.destroy()

    assert result.success
    assert await engine.outputs() == []
    assert await engine.state_list() == []


@pytest.mark.asyncio
async def test_output_without_state_is_skipped(engine: Engine, write_declaration) -> None:
    declaration, _ = engine.load(write_declaration(WITH_OUTPUTS))

    stored = await engine.store_outputs(declaration)

    assert stored == []


@pytest.mark.asyncio
async def test_state_inspection(engine: Engine, network_and_subnet: Path) -> None:
    await engine.apply(network_and_subnet)

    assert [r.address for r in await engine.state_list()] == ["network.main", "subnet.public"]
    subnet = await engine.state_show("subnet.public")
    assert subnet.dependencies == ["network.main"]
    assert await engine.state_show("instance.none") is None


def test_load_rejects_bad_yaml(engine: Engine, write_declaration) -> None:
    with pytest.raises(ParseError):
        engine.load(write_declaration("resources: [unclosed"))


@pytest.mark.asyncio
async def test_escaped_expressions_stored_literally(engine: Engine, write_declaration) -> None:
    path = write_declaration(
        """
        variables:
          env: {default: ci}
        resources:
          network:
            main:
              cidr_block: 10.0.0.0/16
              tags: {Home: "home is $${HOME}"}
          subnet:
            public:
              network_id: ${network.main.id}
              cidr_block: 10.0.1.0/24
          instance:
            web:
              image_id: ami-1
              instance_type: t3.micro
              subnet_id: ${subnet.public.id}
              user_data: "echo $${USER} on ${var.env} in ${subnet.public.availability_zone}"
        outputs:
          greeting:
            value: "$${HOME} is home"
        """
    )

    _, result = await engine.apply(path)

    assert result.success
    network = await engine.state_show("network.main")
    assert network.attributes["tags"] == {"Home": "home is ${HOME}"}
    instance = await engine.state_show("instance.web")
    assert instance.attributes["user_data"] == "echo ${USER} on ci in local-1a"
    assert (await engine.output("greeting")).value == "${HOME} is home"
    assert not (await engine.plan(path)).has_changes
