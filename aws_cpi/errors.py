class CloudError(RuntimeError):
    wire_type = "Bosh::Clouds::CloudError"
    ok_to_retry = False


class InvalidConfiguration(CloudError, ValueError):
    pass


class NotSupported(CloudError):
    wire_type = "Bosh::Clouds::NotSupported"


class UnsupportedProtocolVersion(CloudError):
    wire_type = "Bosh::Clouds::CPIAPIVersionNotSupported"

    def __init__(self, version):
        self.version = version
        super().__init__(f"CPI API version '{version}' is not supported.")


class ImageNotFound(CloudError):
    def __init__(self, image_id: str):
        self.image_id = image_id
        super().__init__(f"could not find AMI '{image_id}'")


class WaitTimeout(CloudError):
    def __init__(self, *, description: str, attempts: int, last_state: str | None):
        self.description = description
        self.attempts = attempts
        self.last_state = last_state
        super().__init__(
            f"Timed out waiting for {description} after {attempts} attempts "
            f"(last state: {last_state})"
        )


class TerminalStateReached(CloudError):
    def __init__(
        self,
        *,
        resource_id: str,
        state: str,
        expected: str,
        reason: str | None = None,
        message: str | None = None,
    ):
        self.resource_id = resource_id
        self.state = state
        self.expected = expected
        self.reason = reason
        if message is None:
            message = f"{resource_id} state is {state}, expected {expected}"
            if reason:
                message = f"{message} with reason: '{reason}'"
        super().__init__(message)


class AbruptlyTerminated(TerminalStateReached):
    wire_type = "Bosh::Clouds::VMCreationFailed"
    ok_to_retry = True


class ResourceVanished(CloudError):
    def __init__(self, resource_id: str, detail: str = ""):
        self.resource_id = resource_id
        message = f"{resource_id} disappeared while waiting for it"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ProviderRateLimited(CloudError):
    ok_to_retry = True


class ProviderError(CloudError):
    def __init__(self, *, operation: str, code: str, detail: str):
        self.operation = operation
        self.code = code
        self.detail = detail
        super().__init__(f"{operation} failed ({code}): {detail}")


class DeviceNotFound(CloudError):
    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Cannot find EBS volume on current instance ({device_name})")


class EndpointUnreachable(CloudError):
    ok_to_retry = True

    def __init__(self, service: str, detail: str):
        self.service = service
        super().__init__(
            f"Please make sure the CPI has proper network access to AWS {service}: {detail}"
        )


class UnknownMethod(CloudError):
    wire_type = "Bosh::Clouds::NotImplemented"

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Method is not known, got '{method}'")
