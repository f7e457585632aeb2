"""Change capture: primary-store changes to signed event envelopes."""

from warehouse_pipeline.emitter.change_capture import ChangeCaptureEmitter, ChangeNotification

__all__ = ["ChangeCaptureEmitter", "ChangeNotification"]
