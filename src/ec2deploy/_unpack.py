from typing import Dict, Mapping, Tuple

from .declaration import IngressRule


def unpack_tags(tags: str | None) -> Tuple[Tuple[str, str], ...]:
    tags_unpacked: list[Tuple[str, str]] = []
    if tags:
        try:
            for tag in tags.split(";"):
                if not tag.strip():
                    continue
                key, value = tag.split("=")
                tags_unpacked.append((key.strip(), value.strip()))
        except ValueError:
            raise ValueError(
                "Tags must be in the format 'key1=value1;key2=value2', "
                f"but instead got {tags}"
            )
    return tuple(tags_unpacked)


def unpack_ingress_rules(rules: str | None) -> Tuple[IngressRule, ...]:
    """Parse 'port[-port]/protocol/cidr' entries separated by ';'."""
    rules_unpacked: list[IngressRule] = []
    if rules:
        for rule in rules.split(";"):
            if not rule.strip():
                continue
            try:
                ports, protocol, cidr = rule.strip().split("/", 2)
                if "-" in ports:
                    from_port, to_port = (int(p) for p in ports.split("-"))
                else:
                    from_port = to_port = int(ports)
            except ValueError:
                raise ValueError(
                    "Ingress rules must be in the format "
                    "'22/tcp/0.0.0.0/0;8000-8080/tcp/10.0.0.0/8', "
                    f"but instead got {rules}"
                )
            rules_unpacked.append(
                IngressRule(
                    from_port=from_port, to_port=to_port, protocol=protocol, cidr=cidr
                )
            )
    return tuple(rules_unpacked)


def convert_tags_for_aws_interface(
    resource_type: str,
    tags: Mapping[str, str],
) -> list:
    return [
        {
            "ResourceType": resource_type,
            "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
        }
    ]


def tags_from_aws_interface(tags: list | None) -> Dict[str, str]:
    return {tag["Key"]: tag["Value"] for tag in tags or []}
