"""Tests for alias → variant resolution."""

import pytest

from foundry_local.catalog import parse_manifest
from foundry_local.errors import NoCompatibleVariant, VariantNotFound
from foundry_local.hardware import Hardware, HardwareProfile
from foundry_local.selector import rank_variants, select_variant


@pytest.fixture
def variants(file_server):
    return parse_manifest(file_server.manifest)


def _of(variants, alias):
    return [v for v in variants if v.alias == alias]


def test_cuda_machine_picks_cuda_variant(variants):
    chosen = select_variant(_of(variants, "phi-4-mini"), "phi-4-mini", HardwareProfile.for_device("cuda"))
    assert chosen.variant_id == "phi-4-mini-cuda"


def test_cpu_machine_picks_cpu_variant(variants):
    chosen = select_variant(_of(variants, "phi-4-mini"), "phi-4-mini", HardwareProfile.for_device("cpu"))
    assert chosen.variant_id == "phi-4-mini-cpu"


def test_npu_beats_gpu_and_cpu(variants):
    profile = HardwareProfile.from_devices(["npu", "gpu"])
    chosen = select_variant(_of(variants, "qwen-0.5b"), "qwen-0.5b", profile)
    assert chosen.variant_id == "qwen-0.5b-npu"


def test_cuda_machine_falls_back_to_generic_gpu(variants):
    chosen = select_variant(_of(variants, "qwen-0.5b"), "qwen-0.5b", HardwareProfile.for_device("cuda"))
    assert chosen.variant_id == "qwen-0.5b-gpu"


def test_ties_broken_by_publication_order(variants):
    cpu = [v for v in variants if v.hardware is Hardware.CPU]
    # Pretend they all share one alias.
    ranked = rank_variants(cpu, HardwareProfile.for_device("cpu"))
    assert ranked == cpu


def test_selection_is_deterministic(variants):
    profile = HardwareProfile.for_device("cuda")
    picks = {
        select_variant(_of(variants, "phi-4-mini"), "phi-4-mini", profile).variant_id
        for _ in range(20)
    }
    assert picks == {"phi-4-mini-cuda"}


def test_explicit_variant_returned_verbatim(variants):
    # Explicit choice ignores hardware ranking and compatibility.
    chosen = select_variant(
        _of(variants, "qwen-0.5b"), "qwen-0.5b", HardwareProfile.for_device("cpu"),
        variant_id="qwen-0.5b-npu",
    )
    assert chosen.variant_id == "qwen-0.5b-npu"


def test_explicit_variant_under_wrong_alias(variants):
    with pytest.raises(VariantNotFound) as exc:
        select_variant(
            _of(variants, "phi-4-mini"), "phi-4-mini", HardwareProfile.for_device("cpu"),
            variant_id="qwen-0.5b-cpu",
        )
    assert exc.value.alias == "phi-4-mini"
    assert exc.value.variant_id == "qwen-0.5b-cpu"


def test_unknown_alias(variants):
    with pytest.raises(VariantNotFound, match="Unknown model alias"):
        select_variant([], "nope", HardwareProfile.for_device("cuda"))


def test_no_compatible_variant(variants):
    with pytest.raises(NoCompatibleVariant) as exc:
        select_variant(_of(variants, "npu-only"), "npu-only", HardwareProfile.for_device("cuda"))
    assert exc.value.devices == ["cuda", "gpu", "cpu"]
