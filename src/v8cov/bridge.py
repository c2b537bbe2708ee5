# Detection of the synthetic module Node.js creates when ESM imports CommonJS.
#
# The bridge module exports a getter/setter pair around the CJS module's
# exports and reports coverage under the same URL as the real file:
#   https://github.com/nodejs/node/blob/v12.1.0/lib/internal/modules/esm/create_dynamic_module.js#L11-L19


def is_cjs_esm_bridge(script_cov):
    functions = script_cov["functions"]
    return (
        len(functions) == 3
        and functions[0]["functionName"] == ""
        and functions[0]["isBlockCoverage"] is True
        and functions[1]["functionName"] == "get"
        and functions[1]["isBlockCoverage"] is False
        and functions[2]["functionName"] == "set"
        and functions[2]["isBlockCoverage"] is False
    )
