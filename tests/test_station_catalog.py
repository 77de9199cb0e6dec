"""Station catalog tests: code generation, category derivation, dedupe."""

import pytest

from shopfloor.core.exceptions import NotFoundError, ValidationError
from shopfloor.models.station import derive_station_category
from shopfloor.services import station_catalog


class TestDeriveCategory:
    @pytest.mark.parametrize("names,expected", [
        (("ประกอบโครง", "Frame Assembly"), "assembly"),
        (("ใสไม้ให้ได้ขนาด", "Sizing"), "sizing"),
        (("อัดบาน", "Door Pressing"), "pressing"),
        (("CNC",), "cnc"),
        (("สี", "Paint"), "paint"),
        (("QC", "Quality Control"), "qc"),
        (("Packing",), "packing"),
        (("Rework",), "rework"),
        (("Warehouse",), "other"),
        ((None, ""), "other"),
    ])
    def test_keywords(self, names, expected):
        assert derive_station_category(*names) == expected


class TestCreateStation:
    def test_codes_are_sequential(self):
        a, _ = station_catalog.create_station({"name": "Frame", "name_en": "Frame Assembly"})
        b, _ = station_catalog.create_station({"name": "Spray", "name_en": "Paint booth"})
        assert (a.code, b.code) == ("ST001", "ST002")
        assert (a.category, b.category) == ("assembly", "paint")
        assert b.sort_order == 2

    def test_same_name_returns_existing(self):
        first, existed = station_catalog.create_station({"name": "CNC"})
        again, existed_again = station_catalog.create_station({"name": "CNC"})
        assert existed is False
        assert existed_again is True
        assert again.id == first.id

    def test_explicit_category_overrides_derivation(self):
        station, _ = station_catalog.create_station({"name": "Line 7", "category": "QC"})
        assert station.category == "qc"
        assert station.is_qc

    def test_invalid_category(self):
        with pytest.raises(ValidationError):
            station_catalog.create_station({"name": "Line 8", "category": "welding"})

    def test_name_required(self):
        with pytest.raises(ValidationError):
            station_catalog.create_station({"name": "  "})

    def test_thai_name_alias(self):
        station, _ = station_catalog.create_station({"name_th": "สี"})
        assert station.name == "สี"
        assert station.category == "paint"


class TestCatalog:
    def test_seed_is_idempotent(self):
        first = station_catalog.seed_default_stations()
        second = station_catalog.seed_default_stations()
        assert [s.id for s in first] == [s.id for s in second]
        assert len(station_catalog.list_stations()) == len(station_catalog.DEFAULT_STATIONS)

    def test_get_missing_station(self):
        with pytest.raises(NotFoundError):
            station_catalog.get_station(404)

    def test_active_filter(self, stations):
        from shopfloor.models import db
        stations["rework"].is_active = False
        db.session.commit()
        active = station_catalog.list_stations(active_only=True)
        assert stations["rework"].id not in {s.id for s in active}
