import io
import json
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from PIL import Image

import med_store as m


def _jpeg_bytes(color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buf, format="JPEG")
    return buf.getvalue()


def _nine_am() -> datetime:
    return datetime(2024, 5, 1, 9, 0)


class BrokenStorage(m.MemoryStorage):
    def set(self, key, value):
        raise OSError("disk full")


class ReadOnlyStorage(m.MemoryStorage):
    def set(self, key, value):
        raise m.StorageError("read-only slot")


class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = b"aspirin" * 100
        self.assertEqual(pt, m.aes_decrypt(m.aes_encrypt(pt, key), key))

    def test_key_created_once(self):
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / ".enc_key"
            k1 = m.load_or_create_key(p)
            k2 = m.load_or_create_key(p)
            self.assertEqual(len(k1), 32)
            self.assertEqual(k1, k2)


class TestCodec(unittest.TestCase):
    def test_roundtrip_keeps_ids_names_times_blobs(self):
        recs = [
            m.MedicineRecord(name="Aspirin", reminder_time=_nine_am(), image_bytes=_jpeg_bytes()),
            m.MedicineRecord(name="Vitamin D", reminder_time=datetime(2024, 5, 1, 21, 30)),
        ]
        enc = m.encode_records(recs)
        self.assertIsInstance(enc, m.Ok)
        dec = m.decode_records(enc.value)
        self.assertIsInstance(dec, m.Ok)
        self.assertEqual(dec.value, recs)

    def test_empty_blob_is_ok_not_error(self):
        self.assertEqual(m.decode_records(None), m.Ok([]))
        self.assertEqual(m.decode_records(b""), m.Ok([]))

    def test_corrupt_blobs_are_decode_errors(self):
        good = {"id": m.new_record_id(), "name": "A", "time": _nine_am().isoformat(), "image": None}
        bad = [
            b"\xff\xfe not utf8",
            b"{not json",
            b'{"id": "x"}',
            json.dumps([1, 2]).encode(),
            json.dumps([{k: v for k, v in good.items() if k != "time"}]).encode(),
            json.dumps([dict(good, id="not-a-uuid")]).encode(),
            json.dumps([dict(good, time="yesterday")]).encode(),
            json.dumps([dict(good, image="%%%")]).encode(),
            json.dumps([dict(good, name=5)]).encode(),
        ]
        for blob in bad:
            with self.subTest(blob=blob):
                self.assertIsInstance(m.decode_records(blob), m.DecodeError)

    def test_encode_failure_is_reported(self):
        rec = m.MedicineRecord(name="A", reminder_time="09:00")
        self.assertIsInstance(m.encode_records([rec]), m.EncodeError)

    def test_time_string_is_hour_minute(self):
        rec = m.MedicineRecord(name="A", reminder_time=datetime(2024, 1, 1, 7, 5, 42))
        self.assertEqual(rec.time_string, "07:05")


class TestRecordImage(unittest.TestCase):
    def test_missing_image(self):
        self.assertIsNone(m.MedicineRecord(name="A", reminder_time=_nine_am()).image())

    def test_garbage_image_is_none(self):
        rec = m.MedicineRecord(name="A", reminder_time=_nine_am(), image_bytes=b"not an image")
        self.assertIsNone(rec.image())

    def test_jpeg_decodes(self):
        rec = m.MedicineRecord(name="A", reminder_time=_nine_am(), image_bytes=_jpeg_bytes())
        img = rec.image()
        self.assertIsNotNone(img)
        self.assertEqual(img.size, (8, 8))

    def test_compress_image_from_rgba_file(self):
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "photo.png"
            Image.new("RGBA", (16, 10), (0, 128, 255, 128)).save(p)
            data = m.compress_image(p)
        self.assertTrue(data.startswith(b"\xff\xd8"))
        self.assertEqual(Image.open(io.BytesIO(data)).size, (16, 10))


class TestStore(unittest.TestCase):
    def setUp(self):
        self.storage = m.MemoryStorage()
        self.store = m.MedicineStore(self.storage)
        self.store.load()

    def _add(self, name, hour=9):
        return self.store.add(m.MedicineRecord(name=name, reminder_time=datetime(2024, 5, 1, hour, 0)))

    def test_empty_storage_loads_empty(self):
        self.assertEqual(self.store.records, [])
        self.assertIsInstance(self.store.last_load, m.Ok)

    def test_add_appends_and_persists(self):
        a = self._add("Aspirin")
        b = self._add("Aspirin")
        self.assertEqual(len(self.store), 2)
        self.assertEqual(self.store.records[-1], b)
        self.assertNotEqual(a.id, b.id)

        reloaded = m.MedicineStore(self.storage)
        self.assertEqual([r.id for r in reloaded.load()], [a.id, b.id])

    def test_order_is_insertion_not_time(self):
        self._add("Evening", hour=21)
        self._add("Morning", hour=7)
        self.assertEqual([r.name for r in self.store], ["Evening", "Morning"])

    def test_update_touches_only_target(self):
        a = self._add("A")
        b = self._add("B")
        before_b = m.encode_records([b]).value

        self.assertTrue(self.store.update(a.id, name="A2", image_bytes=b"\x01"))

        got_a = self.store.get(a.id)
        self.assertEqual(got_a.name, "A2")
        self.assertEqual(got_a.image_bytes, b"\x01")
        self.assertEqual(got_a.id, a.id)
        self.assertEqual(m.encode_records([self.store.get(b.id)]).value, before_b)

    def test_update_unknown_id_is_noop(self):
        self._add("A")
        blob = self.storage.get(m.STORAGE_KEY)
        self.assertFalse(self.store.update(m.new_record_id(), name="X"))
        self.assertEqual(self.storage.get(m.STORAGE_KEY), blob)

    def test_update_rejects_id_field(self):
        a = self._add("A")
        with self.assertRaises(TypeError):
            self.store.update(a.id, id="other")

    def test_delete(self):
        a = self._add("A")
        self._add("B")
        before = self.store.records
        blob = self.storage.get(m.STORAGE_KEY)
        self.assertFalse(self.store.delete(m.new_record_id()))
        self.assertEqual(len(self.store), 2)
        self.assertEqual(self.store.records, before)
        self.assertEqual(self.storage.get(m.STORAGE_KEY), blob)
        self.assertTrue(self.store.delete(a.id))
        self.assertEqual([r.name for r in self.store], ["B"])
        self.assertEqual(len(m.MedicineStore(self.storage).load()), 1)

    def test_persist_is_idempotent(self):
        self._add("A")
        first = self.store.persist()
        second = self.store.persist()
        self.assertEqual(first.value, second.value)

    def test_aspirin_scenario(self):
        rec = self.store.add(m.MedicineRecord(name="Aspirin", reminder_time=_nine_am()))
        self.assertEqual(len(self.store), 1)
        self.assertTrue(rec.id)

        self.store.update(rec.id, name="Aspirin XR")
        self.assertEqual(len(self.store), 1)
        got = self.store.records[0]
        self.assertEqual((got.id, got.name, got.time_string), (rec.id, "Aspirin XR", "09:00"))

        self.store.delete(rec.id)
        self.assertEqual(self.store.records, [])

    def test_corrupt_storage_loads_empty(self):
        store = m.MedicineStore(m.MemoryStorage({m.STORAGE_KEY: b"\x00garbage"}))
        self.assertEqual(store.load(), [])
        self.assertIsInstance(store.last_load, m.DecodeError)

    def test_deeply_nested_storage_loads_empty(self):
        store = m.MedicineStore(m.MemoryStorage({m.STORAGE_KEY: b"[" * 100000}))
        self.assertEqual(store.load(), [])
        self.assertIsInstance(store.last_load, m.DecodeError)

    def test_duplicate_ids_load_empty(self):
        rec = m.MedicineRecord(name="A", reminder_time=_nine_am())
        blob = m.encode_records([rec, m.MedicineRecord(name="B", reminder_time=_nine_am(), id=rec.id)]).value
        store = m.MedicineStore(m.MemoryStorage({m.STORAGE_KEY: blob}))
        self.assertEqual(store.load(), [])
        self.assertIsInstance(store.last_load, m.DecodeError)

    def test_write_failure_keeps_previous_blob(self):
        storage = m.MemoryStorage()
        store = m.MedicineStore(storage)
        store.add(m.MedicineRecord(name="A", reminder_time=_nine_am()))
        blob = storage.get(m.STORAGE_KEY)

        store.storage = BrokenStorage(storage.slots)
        store.add(m.MedicineRecord(name="B", reminder_time=_nine_am()))
        self.assertIsInstance(store.persist(), m.EncodeError)
        self.assertEqual(len(store), 2)
        self.assertEqual(storage.get(m.STORAGE_KEY), blob)

        store.storage = ReadOnlyStorage(storage.slots)
        rec = store.add(m.MedicineRecord(name="C", reminder_time=_nine_am()))
        self.assertTrue(store.update(rec.id, name="C2"))
        self.assertTrue(store.delete(rec.id))
        self.assertIsInstance(store.persist(), m.EncodeError)
        self.assertEqual(storage.get(m.STORAGE_KEY), blob)


class TestEncryptedFileStorage(unittest.TestCase):
    def test_roundtrip_on_disk(self):
        key = AESGCM.generate_key(bit_length=256)
        with tempfile.TemporaryDirectory() as td:
            storage = m.EncryptedFileStorage(Path(td), key)
            store = m.MedicineStore(storage)
            store.load()
            rec = store.add(m.MedicineRecord(name="Metformin", reminder_time=_nine_am()))

            raw = storage.path_for(m.STORAGE_KEY).read_bytes()
            self.assertNotIn(b"Metformin", raw)

            again = m.MedicineStore(m.EncryptedFileStorage(Path(td), key))
            self.assertEqual([r.id for r in again.load()], [rec.id])

    def test_wrong_key_loads_empty(self):
        with tempfile.TemporaryDirectory() as td:
            storage = m.EncryptedFileStorage(Path(td), AESGCM.generate_key(bit_length=256))
            m.MedicineStore(storage).add(m.MedicineRecord(name="A", reminder_time=_nine_am()))

            other = m.MedicineStore(m.EncryptedFileStorage(Path(td), AESGCM.generate_key(bit_length=256)))
            self.assertEqual(other.load(), [])
            self.assertIsInstance(other.last_load, m.DecodeError)

    def test_missing_file_is_none(self):
        with tempfile.TemporaryDirectory() as td:
            storage = m.EncryptedFileStorage(Path(td), AESGCM.generate_key(bit_length=256))
            self.assertIsNone(storage.get(m.STORAGE_KEY))


class TestDraft(unittest.TestCase):
    def setUp(self):
        self.store = m.MedicineStore(m.MemoryStorage())

    def test_blank_name_cannot_save(self):
        d = m.MedicineDraft(name="   ")
        self.assertFalse(d.can_save)
        self.assertIsNone(d.commit_new(self.store))
        self.assertEqual(len(self.store), 0)

    def test_commit_new_strips_name(self):
        d = m.MedicineDraft(name="  Ibuprofen ", reminder_time=_nine_am())
        d.set_time(14, 45)
        rec = d.commit_new(self.store)
        self.assertEqual(rec.name, "Ibuprofen")
        self.assertEqual(rec.time_string, "14:45")
        self.assertEqual(rec.reminder_time.date(), _nine_am().date())

    def test_commit_edit_keeps_id(self):
        rec = m.MedicineDraft(name="A", reminder_time=_nine_am()).commit_new(self.store)
        d = m.MedicineDraft.from_record(rec)
        d.name = "B"
        d.image_bytes = _jpeg_bytes()
        self.assertTrue(d.commit_edit(self.store, rec.id))
        got = self.store.get(rec.id)
        self.assertEqual((got.id, got.name, got.time_string), (rec.id, "B", "09:00"))
        self.assertIsNotNone(got.image())

    def test_cancelled_edit_leaves_store(self):
        rec = m.MedicineDraft(name="A", reminder_time=_nine_am()).commit_new(self.store)
        d = m.MedicineDraft.from_record(rec)
        d.name = "changed"
        d.set_time(23, 0)
        self.assertEqual(self.store.get(rec.id).name, "A")
        self.assertEqual(self.store.get(rec.id).time_string, "09:00")


if __name__ == "__main__":
    unittest.main(verbosity=2)
