"""
Tests for node executors and input resolution.

Executors are called directly with hand-built inputs; resolve_node_inputs is
exercised with hand-built upstream outcomes.
"""

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from flowforge.models.graph import Edge, Node, NodeKind, NodeResult
from flowforge.services.errors import InvalidParameterError, MissingInputError
from flowforge.services.node_executors import get_executor, merge_text, missing_executors
from flowforge.services.result_cache import NodeOutcome
from flowforge.services.workflow_executor import resolve_node_inputs


def make_node(node_id: str, kind: NodeKind, **data) -> Node:
    return Node(id=node_id, kind=kind, data=data)


def image(node_id: str, url: str, kind: NodeKind = NodeKind.IMAGE_INPUT, **metadata) -> NodeResult:
    return NodeResult.image(node_id, url, **metadata).model_copy(update={"kind": kind})


def text(node_id: str, value: str) -> NodeResult:
    return NodeResult.text_value(node_id, value).model_copy(update={"kind": NodeKind.TEXT_INPUT})


async def run(node: Node, inputs: dict, service) -> NodeResult:
    return await get_executor(node.kind)(node, inputs, service)


class TestRegistry:
    def test_every_kind_has_an_executor(self):
        assert missing_executors() == []

    def test_merge_text_blank_line_join(self):
        results = [text("a", "a cat "), text("b", "  "), text("c", "on a mat")]
        assert merge_text(results) == "a cat\n\non a mat"


class TestSourceExecutors:
    @pytest.mark.asyncio
    async def test_text_input(self, fake_service):
        result = await run(make_node("t", NodeKind.TEXT_INPUT, prompt="a cat"), {}, fake_service)

        assert result.type == "text"
        assert result.text == "a cat"
        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_image_input(self, fake_service):
        result = await run(make_node("i", NodeKind.IMAGE_INPUT, imageUrl="https://x/1.png"), {}, fake_service)

        assert result.type == "image"
        assert result.url == "https://x/1.png"

    @pytest.mark.asyncio
    async def test_image_input_without_image(self, fake_service):
        with pytest.raises(MissingInputError) as exc_info:
            await run(make_node("i", NodeKind.IMAGE_INPUT), {}, fake_service)
        assert exc_info.value.node_id == "i"

    @pytest.mark.asyncio
    async def test_gear_returns_adapter(self, fake_service):
        result = await run(make_node("g", NodeKind.GEAR, loraModel="civitai:1@2", weight=0.7), {}, fake_service)

        assert result.type == "adapter"
        assert result.model_id == "civitai:1@2"
        assert result.weight == 0.7
        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_gear_without_model(self, fake_service):
        with pytest.raises(InvalidParameterError) as exc_info:
            await run(make_node("g", NodeKind.GEAR, loraModel="  "), {}, fake_service)
        assert exc_info.value.field == "loraModel"

    @pytest.mark.asyncio
    async def test_gear_weight_out_of_range(self, fake_service):
        with pytest.raises(InvalidParameterError):
            await run(make_node("g", NodeKind.GEAR, loraModel="m", weight=9), {}, fake_service)


class TestControlNetExecutor:
    @pytest.mark.asyncio
    async def test_preprocess_call_and_guide_metadata(self, fake_service):
        node = make_node("c", NodeKind.CONTROL_NET, preprocessor="canny", strength=0.8)

        result = await run(node, {"image": [image("i", "https://x/src.png")]}, fake_service)

        assert fake_service.calls == [
            ("preprocess", {"image": "https://x/src.png", "preprocessor_id": "canny", "strength": 0.8})
        ]
        assert result.url.startswith("https://img.test/preprocess/")
        assert result.metadata["weight"] == 0.8
        assert result.metadata["preprocessor"] == "canny"

    @pytest.mark.asyncio
    async def test_invalid_strength_fails_before_service(self, fake_service):
        node = make_node("c", NodeKind.CONTROL_NET, preprocessor="canny", strength=1.5)

        with pytest.raises(InvalidParameterError) as exc_info:
            await run(node, {"image": [image("i", "https://x/src.png")]}, fake_service)

        assert exc_info.value.field == "strength"
        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_end_step_before_start_step(self, fake_service):
        node = make_node("c", NodeKind.CONTROL_NET, preprocessor="canny", startStep=5, endStep=3)

        with pytest.raises(InvalidParameterError):
            await run(node, {"image": [image("i", "https://x/src.png")]}, fake_service)
        assert fake_service.calls == []


class TestRerenderingAndTools:
    @pytest.mark.asyncio
    async def test_reangle_params(self, fake_service):
        node = make_node("r", NodeKind.RERENDERING, rerenderingType="reangle", degrees=30, direction="left")

        await run(node, {"image": [image("i", "https://x/a.png")], "prompt": []}, fake_service)

        method, args = fake_service.calls[0]
        assert method == "transform"
        assert args["sub_type"] == "reangle"
        assert args["images"] == ["https://x/a.png"]
        assert args["params"]["degrees"] == 30
        assert args["params"]["direction"] == "left"

    @pytest.mark.asyncio
    async def test_connected_prompt_overrides_node_prompt(self, fake_service):
        node = make_node("r", NodeKind.RERENDERING, rerenderingType="reimagine", prompt="stale")

        await run(
            node,
            {"image": [image("i", "https://x/a.png")], "prompt": [text("t", "watercolor")]},
            fake_service,
        )

        assert fake_service.calls[0][1]["params"]["prompt"] == "watercolor"

    @pytest.mark.asyncio
    async def test_reference_requires_reference_type(self, fake_service):
        node = make_node("r", NodeKind.RERENDERING, rerenderingType="reference")

        with pytest.raises(InvalidParameterError) as exc_info:
            await run(node, {"image": [image("i", "https://x/a.png")]}, fake_service)

        assert exc_info.value.field == "referenceType"
        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_unknown_rerendering_type(self, fake_service):
        node = make_node("r", NodeKind.RERENDERING, rerenderingType="explode")

        with pytest.raises(InvalidParameterError):
            await run(node, {"image": [image("i", "https://x/a.png")]}, fake_service)

    @pytest.mark.asyncio
    async def test_upscale(self, fake_service):
        node = make_node("u", NodeKind.TOOL, toolType="upscale", upscaleFactor=4)

        await run(node, {"image": [image("i", "https://x/a.png")]}, fake_service)

        assert fake_service.calls[0][1]["sub_type"] == "upscale"
        assert fake_service.calls[0][1]["params"] == {"upscale_factor": 4}

    @pytest.mark.asyncio
    async def test_upscale_factor_must_be_supported(self, fake_service):
        node = make_node("u", NodeKind.TOOL, toolType="upscale", upscaleFactor=5)

        with pytest.raises(InvalidParameterError):
            await run(node, {"image": [image("i", "https://x/a.png")]}, fake_service)

    @pytest.mark.asyncio
    async def test_inpaint_without_mask(self, fake_service):
        node = make_node("p", NodeKind.TOOL, toolType="inpaint", inpaintPrompt="a hat")

        with pytest.raises(MissingInputError) as exc_info:
            await run(node, {"image": [image("i", "https://x/a.png")]}, fake_service)

        assert exc_info.value.role == "mask"
        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_inpaint_mask_from_data(self, fake_service):
        node = make_node("p", NodeKind.TOOL, toolType="inpaint", maskImage="https://x/mask.png")

        await run(node, {"image": [image("i", "https://x/a.png")]}, fake_service)

        assert fake_service.calls[0][1]["params"]["mask_image"] == "https://x/mask.png"


class TestEngineExecutor:
    @pytest.mark.asyncio
    async def test_prompt_only(self, fake_service):
        node = make_node("e", NodeKind.ENGINE)

        result = await run(node, {"prompt": [text("t", "a cat")]}, fake_service)

        assert fake_service.count("generate") == 1
        args = fake_service.calls[0][1]
        assert args["prompt"] == "a cat"
        assert args["guides"] == []
        assert args["adapters"] == []
        assert result.type == "image"

    @pytest.mark.asyncio
    async def test_empty_prompt(self, fake_service):
        node = make_node("e", NodeKind.ENGINE)

        with pytest.raises(MissingInputError):
            await run(node, {"prompt": [text("t", "   ")]}, fake_service)
        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_guides_adapters_and_seed(self, fake_service):
        node = make_node("e", NodeKind.ENGINE, steps=20, strength=0.6, loras=["extra:1@1"])
        guide = image("c", "https://x/guide.png", kind=NodeKind.CONTROL_NET, weight=0.8, start_step=1,
                      end_step=None, control_mode="balanced")
        adapter = NodeResult.adapter("g", "civitai:9@1", 0.5).model_copy(update={"kind": NodeKind.GEAR})

        await run(
            node,
            {
                "prompt": [text("t", "dog")],
                "guide": [guide],
                "adapter": [adapter],
                "seed": [image("i", "https://x/seed.png")],
            },
            fake_service,
        )

        args = fake_service.calls[0][1]
        assert len(args["guides"]) == 1
        assert args["guides"][0].image == "https://x/guide.png"
        assert args["guides"][0].weight == 0.8
        assert args["guides"][0].end_step == 19
        assert [a.model_id for a in args["adapters"]] == ["civitai:9@1", "extra:1@1"]
        assert args["params"].seed_image == "https://x/seed.png"
        assert args["params"].strength == 0.6
        assert args["params"].steps == 20

    @pytest.mark.asyncio
    async def test_guide_longer_than_engine_steps(self, fake_service):
        node = make_node("e", NodeKind.ENGINE, steps=10)
        guide = image("c", "https://x/guide.png", kind=NodeKind.CONTROL_NET, end_step=15)

        with pytest.raises(InvalidParameterError):
            await run(node, {"prompt": [text("t", "dog")], "guide": [guide]}, fake_service)

    @pytest.mark.asyncio
    async def test_guide_starting_after_default_end_step(self, fake_service):
        node = make_node("e", NodeKind.ENGINE, steps=28)
        guide = image("c", "https://x/guide.png", kind=NodeKind.CONTROL_NET, start_step=40, end_step=None)

        with pytest.raises(InvalidParameterError) as exc_info:
            await run(node, {"prompt": [text("t", "dog")], "guide": [guide]}, fake_service)

        assert exc_info.value.field == "steps"
        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_dimensions_must_be_multiples_of_64(self, fake_service):
        node = make_node("e", NodeKind.ENGINE, width=1000)

        with pytest.raises(InvalidParameterError) as exc_info:
            await run(node, {"prompt": [text("t", "dog")]}, fake_service)
        assert exc_info.value.field == "width"


class TestOutputExecutor:
    @pytest.mark.asyncio
    async def test_passes_image_through(self, fake_service):
        node = make_node("o", NodeKind.OUTPUT, aspectRatio="16:9")

        result = await run(node, {"image": [image("e", "https://x/final.png", kind=NodeKind.ENGINE)]}, fake_service)

        assert result.url == "https://x/final.png"
        assert result.metadata["aspect_ratio"] == "16:9"
        assert (result.metadata["display_width"], result.metadata["display_height"]) == (480, 270)
        assert fake_service.calls == []


class TestInputResolution:
    def _outcomes(self, *results: NodeResult) -> dict[str, NodeOutcome]:
        return {r.node_id: NodeOutcome(node_id=r.node_id, status="succeeded", result=r) for r in results}

    def test_roles_by_producer_kind(self):
        node = make_node("e", NodeKind.ENGINE)
        results = (
            text("t", "dog"),
            image("c", "https://x/guide.png", kind=NodeKind.CONTROL_NET),
            image("i", "https://x/seed.png"),
            image("r", "https://x/ref.png", kind=NodeKind.RERENDERING),
        )
        incoming = [Edge(source=r.node_id, target="e") for r in results]

        inputs = resolve_node_inputs(node, incoming, self._outcomes(*results))

        assert [r.node_id for r in inputs["prompt"]] == ["t"]
        assert [r.node_id for r in inputs["guide"]] == ["c"]
        assert [r.node_id for r in inputs["seed"]] == ["i"]
        assert [r.node_id for r in inputs["reference"]] == ["r"]
        assert inputs["adapter"] == []

    def test_rescene_orders_object_before_scene(self):
        node = make_node("r", NodeKind.RERENDERING, rerenderingType="rescene")
        scene = image("s", "https://x/scene.png")
        obj = image("o", "https://x/object.png")
        incoming = [
            Edge(source="s", target="r", targetHandle="scene"),
            Edge(source="o", target="r", targetHandle="object"),
        ]

        inputs = resolve_node_inputs(node, incoming, self._outcomes(scene, obj))

        assert [r.url for r in inputs["image"]] == ["https://x/object.png", "https://x/scene.png"]

    def test_rescene_with_one_image(self):
        node = make_node("r", NodeKind.RERENDERING, rerenderingType="rescene")
        only = image("i", "https://x/a.png")

        with pytest.raises(MissingInputError) as exc_info:
            resolve_node_inputs(node, [Edge(source="i", target="r")], self._outcomes(only))

        assert exc_info.value.node_id == "r"
        assert exc_info.value.role == "image"

    def test_too_many_images(self):
        node = make_node("c", NodeKind.CONTROL_NET, preprocessor="canny")
        a, b = image("a", "https://x/a.png"), image("b", "https://x/b.png")
        incoming = [Edge(source="a", target="c"), Edge(source="b", target="c")]

        with pytest.raises(InvalidParameterError):
            resolve_node_inputs(node, incoming, self._outcomes(a, b))

    def test_control_net_without_image(self):
        node = make_node("c", NodeKind.CONTROL_NET, preprocessor="canny")

        with pytest.raises(MissingInputError):
            resolve_node_inputs(node, [], {})

    def test_unacceptable_edge_is_ignored(self):
        node = make_node("o", NodeKind.OUTPUT)
        results = (text("t", "not an image"), image("e", "https://x/e.png", kind=NodeKind.ENGINE))
        incoming = [Edge(source="t", target="o"), Edge(source="e", target="o")]

        inputs = resolve_node_inputs(node, incoming, self._outcomes(*results))

        assert [r.node_id for r in inputs["image"]] == ["e"]

    def test_inpaint_mask_handle(self):
        node = make_node("p", NodeKind.TOOL, toolType="inpaint")
        base, mask = image("b", "https://x/base.png"), image("m", "https://x/mask.png")
        incoming = [
            Edge(source="b", target="p", targetHandle="input"),
            Edge(source="m", target="p", targetHandle="mask"),
        ]

        inputs = resolve_node_inputs(node, incoming, self._outcomes(base, mask))

        assert inputs["image"][0].url == "https://x/base.png"
        assert inputs["mask"][0].url == "https://x/mask.png"
