DEFAULT_SCOPE = "https://management.azure.com/.default"
DEFAULT_REFRESH_MARGIN = 60.0
DEFAULT_CALL_TIMEOUT = 300.0
DEFAULT_ROLLOUT_STEPS = 3
TOTAL_TRAFFIC = 100
CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
