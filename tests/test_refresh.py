import json
from datetime import timedelta

import pytest

from conftest import NOW, FakeGenerator, narrative_payload
from wardaqi.errors import NarrativeGenerationError
from wardaqi.models import PollutantReading
from wardaqi.narrative import FreshnessPolicy
from wardaqi.refresh import BulkRefreshJob, segment_for_slot

WARD_IDS = ["W01", "W02", "W03", "W04", "W05"]


def make_job(resolver, store, generator, slots_per_day=4):
    return BulkRefreshJob(resolver, store, generator, FreshnessPolicy(timedelta(hours=24)),
                          slots_per_day=slots_per_day, timeout_seconds=60, now=lambda: NOW)


def batch_response(*ward_ids):
    return "```json\n" + json.dumps([
        {"ward_id": ward_id, "analysis": narrative_payload(f"Batch analysis for {ward_id}.")}
        for ward_id in ward_ids
    ]) + "\n```"


class TestSegments:
    def test_slots_cover_every_ward_once(self):
        covered = []
        for slot in range(4):
            start, count = segment_for_slot(slot, 4, 22)
            covered.extend(range(start, start + count))
        assert covered == list(range(22))
        assert segment_for_slot(3, 4, 22) == (18, 4)

    def test_more_slots_than_wards(self):
        assert [segment_for_slot(slot, 4, 3) for slot in range(4)] == [(0, 1), (1, 1), (2, 1), (3, 0)]

    def test_no_wards(self):
        assert segment_for_slot(0, 4, 0) == (0, 0)

    @pytest.mark.parametrize("slot", [-1, 4])
    def test_slot_out_of_range(self, slot):
        with pytest.raises(ValueError):
            segment_for_slot(slot, 4, 22)


class TestBulkRefresh:
    async def test_partial_batch_upserts_only_returned_wards(self, resolver, store):
        for ward_id in WARD_IDS:
            store.seed(ward_id, timedelta(hours=30), f"Old analysis for {ward_id}.")
        untouched = {ward_id: store.narratives[ward_id] for ward_id in ("W01", "W03", "W05")}
        generator = FakeGenerator(response=batch_response("W02", "W04", "W77"))

        written = await make_job(resolver, store, generator).refresh_segment(0, 5)

        assert sorted(written) == ["W02", "W04"]
        assert len(generator.prompts) == 1
        assert store.bulk_writes == [["W02", "W04"]]
        assert store.narratives["W02"].narrative.impact_summary == "Batch analysis for W02."
        assert store.narratives["W04"].last_updated == NOW
        for ward_id, record in untouched.items():
            assert store.narratives[ward_id] is record

    async def test_skips_wards_still_fresh_for_next_cycle(self, resolver, store):
        store.seed("W01", timedelta(hours=1))
        store.seed("W02", timedelta(hours=20))
        generator = FakeGenerator(response=batch_response("W02", "W03"))

        written = await make_job(resolver, store, generator).refresh_segment(0, 3)

        prompt = generator.prompts[0]
        assert "ward_id W01" not in prompt
        assert "ward_id W02" in prompt
        assert "ward_id W03" in prompt
        assert sorted(written) == ["W02", "W03"]

    async def test_nothing_due_makes_no_generation_call(self, resolver, store):
        store.seed("W01", timedelta(hours=2))
        generator = FakeGenerator(response=batch_response("W01"))

        assert await make_job(resolver, store, generator).refresh_segment(0, 1) == []
        assert generator.prompts == []

    async def test_prompt_uses_latest_snapshots(self, resolver, store):
        store.pollutants["W01"] = PollutantReading(pm2_5=88.0)
        generator = FakeGenerator(response=batch_response("W01", "W02"))

        await make_job(resolver, store, generator).refresh_segment(0, 2)

        assert "PM2.5=88" in generator.prompts[0]
        assert "Ashok Vihar | no recent pollutant measurements" in generator.prompts[0]

    async def test_generation_failure_writes_nothing(self, resolver, store):
        generator = FakeGenerator(error=NarrativeGenerationError("generation timed out after 60s"))

        assert await make_job(resolver, store, generator).refresh_segment(0, 5) == []
        assert store.bulk_writes == []

    async def test_store_failure_reports_nothing_written(self, resolver, store):
        store.fail_writes = True
        generator = FakeGenerator(response=batch_response("W01"))

        assert await make_job(resolver, store, generator).refresh_segment(0, 1) == []

    async def test_segment_past_end_is_empty(self, resolver, store):
        generator = FakeGenerator(response="[]")
        assert await make_job(resolver, store, generator).refresh_segment(5, 3) == []
        assert generator.prompts == []
