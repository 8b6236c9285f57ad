# med_store.py
# Medicine records + JSON codec + storage ports (memory / file / AES-GCM file) + MedicineStore.
# No Kivy imports here: the UI in main.py is a thin caller on top of this module.

import os, io, json, uuid, base64, logging, binascii
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Union, Any

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag
from PIL import Image

logger = logging.getLogger("medreminder.store")

STORAGE_KEY = "medicines"
JPEG_QUALITY = 80

# -------------------------
# Result types
# -------------------------
@dataclass(frozen=True)
class Ok:
    value: Any = None

@dataclass(frozen=True)
class DecodeError:
    reason: str

@dataclass(frozen=True)
class EncodeError:
    reason: str

class StorageError(Exception):
    """Raised by storage ports when a slot cannot be read back or written."""

# -------------------------
# Crypto utilities
# -------------------------
def _atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    try:
        tmp.write_bytes(data)
        tmp.replace(path)
    finally:
        tmp.unlink(missing_ok=True)

def aes_encrypt(data: bytes, key: bytes) -> bytes:
    aes = AESGCM(key)
    nonce = os.urandom(12)
    return nonce + aes.encrypt(nonce, data, None)

def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if not data or len(data) < 12:
        raise InvalidTag("ciphertext too short")
    aes = AESGCM(key)
    nonce, ct = data[:12], data[12:]
    return aes.decrypt(nonce, ct, None)

def load_or_create_key(key_path: Path) -> bytes:
    if key_path.exists():
        d = key_path.read_bytes()
        if len(d) >= 32:
            return d[:32]
        logger.warning("key file too short; generating a new key")
    key = AESGCM.generate_key(256)
    _atomic_write_bytes(key_path, key)
    logger.info("key stored: file")
    return key

# -------------------------
# Storage ports: get(key) -> Optional[bytes], set(key, bytes)
# -------------------------
class MemoryStorage:
    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self.slots: Dict[str, bytes] = dict(initial or {})

    def get(self, key: str) -> Optional[bytes]:
        return self.slots.get(key)

    def set(self, key: str, value: bytes):
        self.slots[key] = bytes(value)

class FileStorage:
    suffix = ".json"

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.base_dir / f"{key}{self.suffix}"

    def _read(self, key: str) -> Optional[bytes]:
        p = self.path_for(key)
        if not p.exists():
            return None
        try:
            return p.read_bytes()
        except OSError as e:
            raise StorageError(f"cannot read {p.name}: {e}") from e

    def get(self, key: str) -> Optional[bytes]:
        return self._read(key)

    def set(self, key: str, value: bytes):
        _atomic_write_bytes(self.path_for(key), value)

class EncryptedFileStorage(FileStorage):
    suffix = ".json.aes"

    def __init__(self, base_dir: Path, key: bytes):
        super().__init__(base_dir)
        self.key = key

    def get(self, key: str) -> Optional[bytes]:
        data = self._read(key)
        if data is None:
            return None
        try:
            return aes_decrypt(data, self.key)
        except InvalidTag as e:
            raise StorageError(f"cannot decrypt slot {key!r}") from e

    def set(self, key: str, value: bytes):
        _atomic_write_bytes(self.path_for(key), aes_encrypt(value, self.key))

# -------------------------
# Images
# -------------------------
def compress_image(source: Union[str, Path, Image.Image], quality: int = JPEG_QUALITY) -> bytes:
    """Re-encode a picked photo as JPEG bytes ready to store on a record."""
    img = source if isinstance(source, Image.Image) else Image.open(source)
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=int(quality))
    return buf.getvalue()

# -------------------------
# Record + codec
# -------------------------
def new_record_id() -> str:
    return str(uuid.uuid4())

@dataclass
class MedicineRecord:
    name: str
    reminder_time: datetime
    image_bytes: Optional[bytes] = None
    id: str = field(default_factory=new_record_id)

    @property
    def time_string(self) -> str:
        return self.reminder_time.strftime("%H:%M")

    def image(self) -> Optional[Image.Image]:
        if not self.image_bytes:
            return None
        try:
            img = Image.open(io.BytesIO(self.image_bytes))
            img.load()
            return img
        except (OSError, ValueError):
            logger.warning(f"image decode failed for id={self.id}")
            return None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "time": self.reminder_time.isoformat(),
            "image": base64.b64encode(self.image_bytes).decode("ascii") if self.image_bytes is not None else None,
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "MedicineRecord":
        if not isinstance(d, dict):
            raise ValueError("record is not an object")
        rid, name, t, img = d["id"], d["name"], d["time"], d["image"]
        if not isinstance(rid, str) or not isinstance(name, str) or not isinstance(t, str):
            raise ValueError("record field has wrong type")
        rid = str(uuid.UUID(rid))
        image_bytes = None
        if img is not None:
            if not isinstance(img, str):
                raise ValueError("image field has wrong type")
            image_bytes = base64.b64decode(img, validate=True)
        return cls(name=name, reminder_time=datetime.fromisoformat(t), image_bytes=image_bytes, id=rid)

def encode_records(records: List[MedicineRecord]) -> Union[Ok, EncodeError]:
    try:
        payload = [r.to_dict() for r in records]
        return Ok(json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    except (TypeError, ValueError, AttributeError) as e:
        return EncodeError(str(e))

def decode_records(blob: Optional[bytes]) -> Union[Ok, DecodeError]:
    if not blob:
        return Ok([])
    try:
        data = json.loads(blob.decode("utf-8"))
        if not isinstance(data, list):
            return DecodeError("stored value is not a list")
        records = [MedicineRecord.from_dict(d) for d in data]
        if len({r.id for r in records}) != len(records):
            return DecodeError("duplicate record ids")
        return Ok(records)
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, binascii.Error, RecursionError) as e:
        return DecodeError(f"{type(e).__name__}: {e}")

# -------------------------
# Store
# -------------------------
class MedicineStore:
    MUTABLE_FIELDS = ("name", "reminder_time", "image_bytes")

    def __init__(self, storage, key: str = STORAGE_KEY):
        self.storage = storage
        self.key = key
        self._records: List[MedicineRecord] = []
        self.last_load: Union[Ok, DecodeError, None] = None

    @property
    def records(self) -> List[MedicineRecord]:
        return list(self._records)

    def __len__(self):
        return len(self._records)

    def __iter__(self):
        return iter(list(self._records))

    def get(self, record_id: str) -> Optional[MedicineRecord]:
        return next((r for r in self._records if r.id == record_id), None)

    def _index_of(self, record_id: str) -> Optional[int]:
        return next((i for i, r in enumerate(self._records) if r.id == record_id), None)

    def load(self) -> List[MedicineRecord]:
        try:
            result = decode_records(self.storage.get(self.key))
        except (StorageError, OSError) as e:
            result = DecodeError(str(e))

        self.last_load = result
        if isinstance(result, DecodeError):
            logger.warning(f"stored medicines unreadable, starting empty: {result.reason}")
            self._records = []
        else:
            self._records = list(result.value)
            logger.info(f"loaded {len(self._records)} medicines")
        return self.records

    def persist(self) -> Union[Ok, EncodeError]:
        result = encode_records(self._records)
        if isinstance(result, EncodeError):
            logger.error(f"encode failed, stored medicines left unchanged: {result.reason}")
            return result
        try:
            self.storage.set(self.key, result.value)
        except (StorageError, OSError) as e:
            logger.exception("writing medicines failed")
            return EncodeError(str(e))
        return result

    def add(self, record: MedicineRecord) -> MedicineRecord:
        self._records.append(record)
        self.persist()
        logger.info(f"added medicine id={record.id} time={record.time_string}")
        return record

    def update(self, record_id: str, **fields) -> bool:
        unknown = set(fields) - set(self.MUTABLE_FIELDS)
        if unknown:
            raise TypeError(f"cannot update fields: {', '.join(sorted(unknown))}")
        idx = self._index_of(record_id)
        if idx is None:
            return False
        rec = self._records[idx]
        for k, v in fields.items():
            setattr(rec, k, v)
        self.persist()
        logger.info(f"updated medicine id={record_id} fields={sorted(fields)}")
        return True

    def delete(self, record_id: str) -> bool:
        idx = self._index_of(record_id)
        if idx is None:
            return False
        del self._records[idx]
        self.persist()
        logger.info(f"deleted medicine id={record_id}")
        return True

# -------------------------
# Form draft (shared by the add and edit dialogs)
# -------------------------
class MedicineDraft:
    def __init__(self, name: str = "", reminder_time: Optional[datetime] = None,
                 image_bytes: Optional[bytes] = None):
        self.name = name
        self.reminder_time = reminder_time or datetime.now().replace(second=0, microsecond=0)
        self.image_bytes = image_bytes

    @classmethod
    def from_record(cls, record: MedicineRecord) -> "MedicineDraft":
        return cls(name=record.name, reminder_time=record.reminder_time, image_bytes=record.image_bytes)

    @property
    def can_save(self) -> bool:
        return bool(self.name.strip())

    def set_time(self, hour: int, minute: int):
        self.reminder_time = self.reminder_time.replace(hour=int(hour), minute=int(minute), second=0, microsecond=0)

    def commit_new(self, store: MedicineStore) -> Optional[MedicineRecord]:
        if not self.can_save:
            return None
        return store.add(MedicineRecord(name=self.name.strip(), reminder_time=self.reminder_time,
                                        image_bytes=self.image_bytes))

    def commit_edit(self, store: MedicineStore, record_id: str) -> bool:
        if not self.can_save:
            return False
        return store.update(record_id, name=self.name.strip(), reminder_time=self.reminder_time,
                            image_bytes=self.image_bytes)
