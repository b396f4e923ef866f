"""wgpu backends: native (wgpu-native via Vulkan/Metal/D3D12) and browser (WebGPU).

Both share the same pipeline building and dispatch code; they differ in how
the device is obtained and in whether the host may block on the queue.
"""

import logging

import wgpu

from wgpu_nd.wgpu_backend import Backend, register_backend
from wgpu_nd.wgpu_config import get_config
from wgpu_nd.wgpu_errors import DeviceError, DeviceLostError, OutOfMemoryError

logger = logging.getLogger(__name__)

STORAGE_USAGE = wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC

_BINDING_TYPES = {
    "read": "read-only-storage",
    "read_write": "storage",
}


def _limit(device, name, default):
    """Device limit by name; wgpu-py spells limits with dashes or underscores."""
    limits = device.limits
    for key in (name, name.replace("-", "_")):
        if key in limits:
            return limits[key]
    return default


class NativeBackend(Backend):
    """Backend on a wgpu device.

    Args:
        config: Config, defaults to the process config.
        device: an existing ``wgpu.GPUDevice``; requested from the
            high-performance adapter when omitted.
    """

    name = "native"

    def __init__(self, config=None, device=None):
        super().__init__(config)
        self.device = device if device is not None else self._request_device()
        self.queue = self.device.queue
        self.max_buffer_size = _limit(self.device, "max-storage-buffer-binding-size", 128 << 20)
        self._watch_lost()

    def _request_device(self):
        import wgpu.backends.wgpu_native  # noqa: F401

        try:
            adapter = wgpu.gpu.request_adapter_sync(power_preference=self.config.power_preference)
        except Exception as e:
            raise DeviceError(f"no wgpu adapter available: {e}") from e
        if adapter is None:
            raise DeviceError("no wgpu adapter available")
        info = adapter.info
        logger.info(
            "wgpu adapter: %s (%s, %s)",
            info.get("device", "?"), info.get("adapter_type", "?"), info.get("backend_type", "?"),
        )
        try:
            return adapter.request_device_sync()
        except Exception as e:
            raise DeviceError(f"failed to create device: {e}") from e

    def _translate_error(self, exc):
        if isinstance(exc, wgpu.GPUOutOfMemoryError):
            return OutOfMemoryError(str(exc))
        if isinstance(exc, wgpu.GPUInternalError):
            return DeviceLostError(str(exc))
        if isinstance(exc, wgpu.GPUError):
            return DeviceError(str(exc))
        return super()._translate_error(exc)

    def _watch_lost(self):
        """Mark the backend lost once the device's ``lost`` promise resolves."""
        try:
            lost = self.device.lost
        except NotImplementedError:
            lost = None
        if not hasattr(lost, "then"):
            logger.debug("%s device does not report loss", self.name)
            return
        lost.then(self._on_lost)

    def _on_lost(self, info):
        if self._closed:
            return
        reason = getattr(info, "reason", None)
        message = getattr(info, "message", None) or str(info)
        self.mark_lost(f"{message} (reason: {reason})" if reason else message)

    # ---- memory ----
    def _create_raw(self, size):
        if size > self.max_buffer_size:
            raise OutOfMemoryError(
                f"buffer size {size} bytes exceeds device limit ({self.max_buffer_size} bytes)"
            )
        return self.device.create_buffer(size=size, usage=STORAGE_USAGE)

    def _destroy_raw(self, handle):
        handle.destroy()

    def _write_raw(self, handle, offset, data):
        self.queue.write_buffer(handle, offset, data)
        return None

    # ---- pipelines ----
    def _build(self, program):
        shader_module = self.device.create_shader_module(label=program.label, code=program.wgsl())

        entries = []
        for i, binding in enumerate(program.bindings):
            entries.append({
                "binding": i,
                "visibility": wgpu.ShaderStage.COMPUTE,
                "buffer": {
                    "type": _BINDING_TYPES[binding.access],
                    "has_dynamic_offset": False,
                },
            })

        bind_group_layout = self.device.create_bind_group_layout(entries=entries)
        pipeline_layout = self.device.create_pipeline_layout(bind_group_layouts=[bind_group_layout])
        pipeline = self.device.create_compute_pipeline(
            label=program.label,
            layout=pipeline_layout,
            compute={"module": shader_module, "entry_point": "main"},
        )
        return pipeline, bind_group_layout

    def _submit(self, pipeline, program, allocs, workgroups):
        pipeline, bind_group_layout = pipeline
        resources = []
        for i, alloc in enumerate(allocs):
            resources.append({
                "binding": i,
                "resource": {"buffer": alloc.handle, "offset": 0, "size": alloc.handle.size},
            })
        bind_group = self.device.create_bind_group(layout=bind_group_layout, entries=resources)

        x, y, z = (tuple(workgroups) + (1, 1))[:3]
        command_encoder = self.device.create_command_encoder()
        compute_pass = command_encoder.begin_compute_pass()
        compute_pass.set_pipeline(pipeline)
        compute_pass.set_bind_group(0, bind_group)
        compute_pass.dispatch_workgroups(x, y, z)
        compute_pass.end()
        self.queue.submit([command_encoder.finish()])
        return None

    # ---- synchronization ----
    def _read_raw(self, handle, offset, nbytes):
        return bytes(self.queue.read_buffer(handle, buffer_offset=offset, size=nbytes))

    def _wait_idle(self):
        self.queue.on_submitted_work_done_sync()

    async def _read_staged(self, handle, offset, nbytes):
        staging = self.device.create_buffer(
            size=nbytes, usage=wgpu.BufferUsage.MAP_READ | wgpu.BufferUsage.COPY_DST
        )
        command_encoder = self.device.create_command_encoder()
        command_encoder.copy_buffer_to_buffer(handle, offset, staging, 0, nbytes)
        self.queue.submit([command_encoder.finish()])
        await staging.map_async(wgpu.MapMode.READ)
        try:
            return bytes(staging.read_mapped())
        finally:
            staging.unmap()
            staging.destroy()

    async def read_async(self, buffer, nbytes=None, offset=0):
        self._check_alive()
        nbytes = buffer.nbytes - offset if nbytes is None else nbytes
        if nbytes == 0:
            return b""
        with self._lock:
            upto = self._serial
        with self._device_errors("read_async"):
            data = await self._read_staged(buffer.handle, offset, nbytes)
        with self._lock:
            self._retire(upto)
        return data

    def close(self):
        super().close()
        try:
            self.device.destroy()
        except wgpu.GPUError as e:
            logger.debug("device destroy failed: %s", e)


class BrowserBackend(NativeBackend):
    """Backend on the browser's WebGPU implementation (Pyodide).

    The browser never lets the host block on the GPU, so construct it with
    ``await BrowserBackend.create()`` and read through ``read_async`` /
    ``WgpuTensor.numpy_async``.
    """

    name = "browser"
    blocking = False

    def __init__(self, config=None, device=None):
        if device is None:
            raise DeviceError(
                "browser backend needs an async device request; use `await BrowserBackend.create()`"
            )
        super().__init__(config, device)

    @classmethod
    async def create(cls, config=None):
        try:
            import wgpu.backends.js_webgpu  # noqa: F401
        except ImportError as e:
            raise DeviceError(f"WebGPU browser backend unavailable: {e}") from e
        config = config or get_config()
        adapter = await wgpu.gpu.request_adapter_async(power_preference=config.power_preference)
        if adapter is None:
            raise DeviceError("browser exposes no WebGPU adapter")
        device = await adapter.request_device_async()
        return cls(config, device)

    def _read_raw(self, handle, offset, nbytes):
        raise DeviceError("blocking read-back is unavailable in the browser; use read_async")

    def _wait_idle(self):
        raise DeviceError("blocking synchronize is unavailable in the browser; use synchronize_async")

    async def synchronize_async(self):
        self._check_alive()
        with self._lock:
            upto = self._serial
        with self._device_errors("synchronize"):
            await self.queue.on_submitted_work_done_async()
        with self._lock:
            self._retire(upto)


register_backend("native", lambda config: NativeBackend(config))
register_backend("browser", lambda config: BrowserBackend(config))
