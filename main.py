# main.py
# DoseDesk Medicine Reminder (KivyMD): single screen list, add/edit dialogs, encrypted local storage
#
# - Run normally:            python main.py
#
# Buildozer notes (in buildozer.spec):
#   requirements = python3,kivy,kivymd,pyjnius,plyer,pillow,cryptography
#   android.api = 34
#   android.minapi = 24
#   android.permissions = POST_NOTIFICATIONS,CAMERA,READ_MEDIA_IMAGES
#
# Notification permission is requested once at startup; nothing schedules reminders yet.

import os, sys, io, uuid, logging
from pathlib import Path
from typing import Optional
from threading import RLock

from kivy.lang import Builder
from kivy.clock import Clock, mainthread
from kivy.core.window import Window
from kivy.core.image import Image as CoreImage
from kivy.uix.image import Image as KivyImage
from kivy.uix.scrollview import ScrollView
from kivy.metrics import dp
from kivy.properties import NumericProperty
from kivy.utils import platform as _kivy_platform

from kivymd.app import MDApp
from kivymd.uix.dialog import MDDialog
from kivymd.uix.button import MDFlatButton, MDRaisedButton
from kivymd.uix.list import TwoLineAvatarListItem, IconLeftWidget, ILeftBody
from kivymd.uix.textfield import MDTextField
from kivymd.uix.boxlayout import MDBoxLayout
from kivymd.uix.label import MDLabel
from kivymd.uix.pickers import MDTimePicker

from plyer import camera, filechooser

from med_store import (
    MedicineStore, MedicineDraft, MedicineRecord, EncryptedFileStorage, DecodeError,
    compress_image, load_or_create_key,
)

try:
    from jnius import autoclass
except Exception:
    autoclass = None

if _kivy_platform != "android" and hasattr(Window, "size"):
    Window.size = (420, 760)

# -------------------------
# Paths / Locks
# -------------------------
_LOG_LOCK = RLock()

def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False

def _android_ready() -> bool:
    return _kivy_platform == "android" and autoclass is not None

def _android_activity():
    PythonActivity = autoclass("org.kivy.android.PythonActivity")
    return PythonActivity.mActivity

def _app_base_dir() -> Path:
    override = os.environ.get("DOSEDESK_DATA_DIR")
    if override and _is_writable_dir(Path(override)):
        return Path(override)

    p = os.environ.get("ANDROID_PRIVATE")
    if p:
        d = Path(p) / "dosedesk_data"
        if _is_writable_dir(d):
            return d

    if _android_ready():
        try:
            d = Path(str(_android_activity().getFilesDir().getAbsolutePath())) / "dosedesk_data"
            if _is_writable_dir(d):
                return d
        except Exception:
            pass

    d = Path(__file__).resolve().parent / "dosedesk_data"
    d.mkdir(parents=True, exist_ok=True)
    return d

BASE_DIR = _app_base_dir()
KEY_PATH = BASE_DIR / ".enc_key"
LOG_PATH = BASE_DIR / "app.log"
PHOTO_DIR = BASE_DIR / "photos"

# -------------------------
# Logging ring buffer
# -------------------------
class _RingLog:
    def __init__(self, max_lines=800):
        self.max_lines = int(max_lines)
        self._lines = []
        self._lock = RLock()

    def add(self, line: str):
        line = (line or "").rstrip("\n")
        if not line:
            return
        with self._lock:
            self._lines.append(line)
            if len(self._lines) > self.max_lines:
                self._lines = self._lines[-self.max_lines:]

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def clear(self):
        with self._lock:
            self._lines = []

_RING = _RingLog()

class _FileAndRingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self._fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    def emit(self, record):
        try:
            msg = self._fmt.format(record)
        except Exception:
            msg = str(record.getMessage())
        _RING.add(msg)
        try:
            with _LOG_LOCK:
                with LOG_PATH.open("a", encoding="utf-8") as f:
                    f.write(msg + "\n")
        except OSError:
            pass

logger = logging.getLogger("medreminder")
logger.setLevel(logging.INFO)
if not any(isinstance(h, _FileAndRingHandler) for h in logger.handlers):
    logger.addHandler(_FileAndRingHandler())

# -------------------------
# Android runtime permissions
# -------------------------
def android_sdk_int() -> int:
    if not _android_ready():
        return 0
    try:
        BuildVERSION = autoclass("android.os.Build$VERSION")
        return int(BuildVERSION.SDK_INT)
    except Exception:
        return 0

def request_notification_permission():
    """
    Fire-and-forget: Android 13+ needs POST_NOTIFICATIONS at runtime.
    The outcome is only logged; the app works either way.
    """
    if not _android_ready():
        logger.info("notification permission: desktop (not required)")
        return
    if android_sdk_int() < 33:
        logger.info("notification permission granted: True (pre-Android 13)")
        return
    try:
        activity = _android_activity()
        ContextCompat = autoclass("androidx.core.content.ContextCompat")
        ActivityCompat = autoclass("androidx.core.app.ActivityCompat")
        PackageManager = autoclass("android.content.pm.PackageManager")
        Manifest = autoclass("android.Manifest$permission")

        perm = Manifest.POST_NOTIFICATIONS
        granted = ContextCompat.checkSelfPermission(activity, perm) == PackageManager.PERMISSION_GRANTED
        if granted:
            logger.info("notification permission granted: True")
        else:
            ActivityCompat.requestPermissions(activity, [perm], 2407)
            logger.info("requested POST_NOTIFICATIONS permission")
    except Exception:
        logger.exception("error requesting notification permission")

# -------------------------
# Image helpers (Kivy side)
# -------------------------
def texture_from_bytes(data: Optional[bytes]):
    if not data:
        return None
    try:
        return CoreImage(io.BytesIO(data), ext="jpg").texture
    except Exception:
        logger.warning("image texture decode failed")
        return None

class MedicineAvatar(ILeftBody, KivyImage):
    pass

class MedicineListItem(TwoLineAvatarListItem):
    long_press_time = NumericProperty(0.6)

    def __init__(self, tap_action=None, long_press_action=None, **kwargs):
        super().__init__(**kwargs)
        self._on_tap = tap_action
        self._on_long_press = long_press_action
        self._press_ev = None
        self._long_fired = False

    def on_touch_down(self, touch):
        if self.collide_point(*touch.pos):
            self._long_fired = False
            self._press_ev = Clock.schedule_once(self._fire_long_press, self.long_press_time)
        return super().on_touch_down(touch)

    def on_touch_up(self, touch):
        if self._press_ev is not None:
            self._press_ev.cancel()
            self._press_ev = None
        return super().on_touch_up(touch)

    def _fire_long_press(self, *_):
        self._press_ev = None
        self._long_fired = True
        if self._on_long_press:
            self._on_long_press()

    def on_release(self):
        if self._long_fired:
            self._long_fired = False
            return
        if self._on_tap:
            self._on_tap()

# -------------------------
# Kivy KV (single screen)
# -------------------------
KV = """
MDScreen:
    MDBoxLayout:
        orientation: "vertical"

        MDTopAppBar:
            title: "Medicine Reminder"
            elevation: 4
            right_action_items: [["text-box-outline", lambda x: app.show_log_dialog()], ["plus", lambda x: app.show_add_dialog()]]

        FloatLayout:
            MDLabel:
                id: empty_label
                text: "No medicines added yet"
                halign: "center"
                theme_text_color: "Secondary"
                font_style: "H6"
                pos_hint: {"center_x": 0.5, "center_y": 0.5}
                opacity: 0

            ScrollView:
                pos_hint: {"x": 0, "y": 0}
                MDList:
                    id: medicines_list
"""

# -------------------------
# App
# -------------------------
class MedicineReminderApp(MDApp):
    def __init__(self, store: Optional[MedicineStore] = None, **kwargs):
        super().__init__(**kwargs)
        self.store: Optional[MedicineStore] = store
        self._form_dialog: Optional[MDDialog] = None
        self._delete_dialog: Optional[MDDialog] = None
        self._log_dialog: Optional[MDDialog] = None
        self._medicine_to_delete: Optional[MedicineRecord] = None
        self._permission_requested = False

    def build(self):
        self.title = "Medicine Reminder"
        self.theme_cls.theme_style = "Dark"
        self.theme_cls.primary_palette = "Blue"
        return Builder.load_string(KV)

    def on_start(self):
        logger.info(f"app start platform={_kivy_platform} base={BASE_DIR}")

        if self.store is None:
            key = load_or_create_key(KEY_PATH)
            self.store = MedicineStore(EncryptedFileStorage(BASE_DIR, key))

        self.store.load()
        if isinstance(self.store.last_load, DecodeError):
            logger.info("starting with an empty medicine list")

        self.refresh_medicines()

        if not self._permission_requested:
            self._permission_requested = True
            Clock.schedule_once(lambda *_: request_notification_permission(), 0.2)

    # -------------------------
    # Listing
    # -------------------------
    def refresh_medicines(self):
        if self.store is None:
            return
        try:
            ml = self.root.ids.medicines_list
            ml.clear_widgets()

            for m in self.store:
                item = MedicineListItem(
                    text=m.name,
                    secondary_text=f"Time: {m.time_string}",
                    tap_action=lambda m_id=m.id: self.show_edit_dialog(m_id),
                    long_press_action=lambda m_id=m.id: self.confirm_delete(m_id),
                )
                tex = texture_from_bytes(m.image_bytes)
                if tex is not None:
                    item.add_widget(MedicineAvatar(texture=tex))
                else:
                    item.add_widget(IconLeftWidget(icon="pill"))
                ml.add_widget(item)

            self.root.ids.empty_label.opacity = 0 if len(self.store) else 1
        except Exception:
            logger.exception("refresh_medicines failed")

    # -------------------------
    # Delete confirmation
    # -------------------------
    def confirm_delete(self, med_id: str):
        med = self.store.get(med_id) if self.store is not None else None
        if not med:
            return
        self._medicine_to_delete = med

        def cancel(*_):
            self._medicine_to_delete = None
            self._delete_dialog.dismiss()

        def delete(*_):
            try:
                if self._medicine_to_delete:
                    self.store.delete(self._medicine_to_delete.id)
                self._medicine_to_delete = None
                self._delete_dialog.dismiss()
                self.refresh_medicines()
            except Exception:
                logger.exception("delete medicine failed")

        self._delete_dialog = MDDialog(
            title="Delete Medicine",
            text=f'Are you sure you want to delete "{med.name}"?',
            buttons=[
                MDFlatButton(text="Cancel", on_release=cancel),
                MDRaisedButton(text="Delete", md_bg_color=(0.8, 0.2, 0.2, 1), on_release=delete),
            ]
        )
        self._delete_dialog.open()

    # -------------------------
    # Debug log
    # -------------------------
    def show_log_dialog(self):
        content = MDBoxLayout(orientation="vertical", size_hint_y=None, height=dp(360))
        scroll = ScrollView(do_scroll_x=False)
        label = MDLabel(text=_RING.text() or "(empty)", size_hint_y=None, font_style="Caption")
        label.bind(texture_size=lambda inst, size: setattr(inst, "height", size[1]))
        scroll.add_widget(label)
        content.add_widget(scroll)

        def clear(*_):
            _RING.clear()
            try:
                LOG_PATH.unlink(missing_ok=True)
            except OSError:
                pass
            label.text = "(empty)"

        self._log_dialog = MDDialog(
            title="Debug log",
            type="custom",
            content_cls=content,
            buttons=[
                MDFlatButton(text="Clear", on_release=clear),
                MDRaisedButton(text="Close", on_release=lambda *_: self._log_dialog.dismiss()),
            ]
        )
        self._log_dialog.open()

    # -------------------------
    # Add / Edit medicine dialogs (with time picker + photo)
    # -------------------------
    def show_add_dialog(self):
        self._open_form(MedicineDraft(), title="Add Medicine", record_id=None)

    def show_edit_dialog(self, med_id: str):
        med = self.store.get(med_id) if self.store is not None else None
        if not med:
            return
        self._open_form(MedicineDraft.from_record(med), title="Edit Medicine", record_id=med.id)

    def _open_form(self, draft: MedicineDraft, title: str, record_id: Optional[str]):
        content = MDBoxLayout(orientation="vertical", spacing="10dp", padding="10dp", size_hint_y=None)
        content.bind(minimum_height=content.setter("height"))

        name = MDTextField(hint_text="Medicine Name", text=draft.name,
                           helper_text="Required", helper_text_mode="on_error")
        time_btn = MDRaisedButton(text=f"Time: {draft.reminder_time.strftime('%H:%M')}")
        preview = KivyImage(size_hint_y=None, height=dp(200), fit_mode="contain")
        photo_row = MDBoxLayout(orientation="horizontal", spacing="10dp", size_hint_y=None, height="48dp")

        save_btn = MDRaisedButton(text="Save", disabled=not draft.can_save)

        def on_name(_, text):
            draft.name = text
            save_btn.disabled = not draft.can_save
            name.error = not draft.can_save

        name.bind(text=on_name)

        def redraw_preview():
            tex = texture_from_bytes(draft.image_bytes)
            preview.texture = tex
            preview.opacity = 1 if tex is not None else 0
            preview.height = dp(200) if tex is not None else 0

        def open_time_picker(*_):
            picker = MDTimePicker()
            picker.set_time(draft.reminder_time.time())

            def on_save(_, time_obj):
                draft.set_time(time_obj.hour, time_obj.minute)
                time_btn.text = f"Time: {draft.reminder_time.strftime('%H:%M')}"

            picker.bind(on_save=on_save)
            picker.open()

        @mainthread
        def on_image_picked(path: Optional[str]):
            if not path:
                logger.info("image pick cancelled")
                return
            try:
                draft.image_bytes = compress_image(path)
                logger.info(f"image attached ({len(draft.image_bytes)} bytes)")
                redraw_preview()
            except Exception:
                logger.exception("image load failed")

        def pick_from_library(*_):
            try:
                filechooser.open_file(
                    on_selection=lambda sel: on_image_picked(sel[0] if sel else None),
                    filters=[["Images", "*.jpg", "*.jpeg", "*.png"]],
                )
            except Exception:
                logger.exception("photo library unavailable")

        def take_photo(*_):
            PHOTO_DIR.mkdir(parents=True, exist_ok=True)
            target = PHOTO_DIR / f"capture.{uuid.uuid4().hex}.jpg"

            def on_complete(path):
                on_image_picked(path if path and Path(path).exists() else None)
                return False

            try:
                camera.take_picture(filename=str(target), on_complete=on_complete)
            except NotImplementedError:
                logger.info("camera not available on this platform")
            except Exception:
                logger.exception("camera capture failed")

        photo_row.add_widget(MDFlatButton(text="Upload Image", on_release=pick_from_library))
        photo_row.add_widget(MDFlatButton(text="Take Photo", on_release=take_photo))
        time_btn.bind(on_release=open_time_picker)

        for w in (name, time_btn, preview, photo_row):
            content.add_widget(w)

        redraw_preview()

        def save(*_):
            try:
                if record_id is None:
                    rec = draft.commit_new(self.store)
                    if rec is None:
                        name.error = True
                        return
                else:
                    if not draft.can_save:
                        name.error = True
                        return
                    draft.commit_edit(self.store, record_id)
                self._form_dialog.dismiss()
                self.refresh_medicines()
            except Exception:
                logger.exception("save medicine failed")

        save_btn.bind(on_release=save)

        self._form_dialog = MDDialog(
            title=title,
            type="custom",
            content_cls=content,
            buttons=[
                MDFlatButton(text="Cancel", on_release=lambda *_: self._form_dialog.dismiss()),
                save_btn,
            ]
        )
        self._form_dialog.open()

# -------------------------
# Entrypoint
# -------------------------
def main():
    if "--data-dir" in sys.argv:
        print(BASE_DIR)
        return

    MedicineReminderApp().run()

if __name__ == "__main__":
    main()
