"""
Network Module Functions
Creates VPC, public/private/data subnet tiers, NAT gateways and route tables
"""

import pulumi
import pulumi_aws as aws
from typing import Dict, List, Any


def create_vpc(name: str, cidr: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create VPC with DNS settings

    Args:
        name: VPC name
        cidr: VPC CIDR block
        tags: Additional tags

    Returns:
        Dict with vpc resource and outputs
    """
    tags = tags or {}

    vpc = aws.ec2.Vpc(
        f"{name}-vpc",
        cidr_block=cidr,
        enable_dns_hostnames=True,
        enable_dns_support=True,
        tags={
            **tags,
            "Name": f"{name}-vpc",
            "Module": "network"
        }
    )

    return {
        "vpc": vpc,
        "vpc_id": vpc.id,
        "vpc_cidr_block": vpc.cidr_block
    }


def create_internet_gateway(name: str, vpc_id: pulumi.Output[str], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create Internet Gateway for VPC

    Args:
        name: Resource name prefix
        vpc_id: VPC ID to attach to
        tags: Additional tags

    Returns:
        Dict with igw resource and outputs
    """
    tags = tags or {}

    igw = aws.ec2.InternetGateway(
        f"{name}-igw",
        vpc_id=vpc_id,
        tags={
            **tags,
            "Name": f"{name}-igw",
            "Module": "network"
        }
    )

    return {
        "igw": igw,
        "igw_id": igw.id
    }


def create_subnets(name: str, tier: str, vpc_id: pulumi.Output[str], subnet_cidrs: List[str],
                   availability_zones: List[str], cluster_name: str,
                   tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create one subnet per availability zone for a tier

    Public subnets carry the external ELB role tag, private subnets the
    internal ELB role tag. Data subnets are untagged for Kubernetes so that
    neither load balancers nor autoscaled nodes land in them.

    Args:
        name: Resource name prefix
        tier: "public", "private" or "data"
        vpc_id: VPC ID
        subnet_cidrs: List of CIDR blocks, one per AZ
        availability_zones: List of availability zones
        cluster_name: EKS cluster name used in discovery tags
        tags: Additional tags

    Returns:
        Dict with subnet resources and outputs
    """
    tags = tags or {}

    tier_tags = {
        "public": {
            f"kubernetes.io/cluster/{cluster_name}": "shared",
            "kubernetes.io/role/elb": "1",
        },
        "private": {
            f"kubernetes.io/cluster/{cluster_name}": "shared",
            "kubernetes.io/role/internal-elb": "1",
            "karpenter.sh/discovery": cluster_name,
        },
        "data": {},
    }
    if tier not in tier_tags:
        raise ValueError(f"Unknown subnet tier: {tier}")

    subnets = []
    for i, cidr in enumerate(subnet_cidrs):
        subnet = aws.ec2.Subnet(
            f"{name}-{tier}-subnet-{i+1}",
            vpc_id=vpc_id,
            cidr_block=cidr,
            availability_zone=availability_zones[i],
            map_public_ip_on_launch=tier == "public",
            tags={
                **tags,
                **tier_tags[tier],
                "Name": f"{name}-{tier}-{availability_zones[i]}",
                "Type": tier,
                "Module": "network"
            }
        )
        subnets.append(subnet)

    return {
        "subnets": subnets,
        "subnet_ids": [subnet.id for subnet in subnets],
    }


def create_nat_gateways(name: str, public_subnet_ids: List[pulumi.Output[str]], count: int,
                        igw=None, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create NAT gateways with Elastic IPs in the first `count` public subnets

    Args:
        name: Resource name prefix
        public_subnet_ids: Public subnet IDs
        count: Number of NAT gateways
        igw: Internet gateway the NAT gateways depend on
        tags: Additional tags

    Returns:
        Dict with NAT gateway resources and outputs
    """
    tags = tags or {}
    opts = pulumi.ResourceOptions(depends_on=[igw]) if igw else None

    eips = []
    nat_gateways = []
    for i in range(count):
        eip = aws.ec2.Eip(
            f"{name}-nat-eip-{i+1}",
            domain="vpc",
            tags={
                **tags,
                "Name": f"{name}-nat-eip-{i+1}",
                "Module": "network"
            },
            opts=opts
        )
        eips.append(eip)

        nat = aws.ec2.NatGateway(
            f"{name}-nat-{i+1}",
            allocation_id=eip.id,
            subnet_id=public_subnet_ids[i],
            tags={
                **tags,
                "Name": f"{name}-nat-{i+1}",
                "Module": "network"
            },
            opts=opts
        )
        nat_gateways.append(nat)

    return {
        "eips": eips,
        "nat_gateways": nat_gateways,
        "nat_gateway_ids": [nat.id for nat in nat_gateways]
    }


def create_public_route_table(name: str, vpc_id: pulumi.Output[str], igw_id: pulumi.Output[str],
                              subnet_ids: List[pulumi.Output[str]], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create route table for public subnets with a default route to the internet gateway
    """
    tags = tags or {}

    route_table = aws.ec2.RouteTable(
        f"{name}-public-rt",
        vpc_id=vpc_id,
        tags={
            **tags,
            "Name": f"{name}-public-rt",
            "Module": "network"
        }
    )

    route = aws.ec2.Route(
        f"{name}-public-route",
        route_table_id=route_table.id,
        destination_cidr_block="0.0.0.0/0",
        gateway_id=igw_id
    )

    associations = []
    for i, subnet_id in enumerate(subnet_ids):
        association = aws.ec2.RouteTableAssociation(
            f"{name}-public-rta-{i+1}",
            subnet_id=subnet_id,
            route_table_id=route_table.id
        )
        associations.append(association)

    return {
        "route_table": route_table,
        "route": route,
        "associations": associations,
        "route_table_id": route_table.id
    }


def create_private_route_tables(name: str, vpc_id: pulumi.Output[str], nat_gateway_ids: List[pulumi.Output[str]],
                                subnet_ids: List[pulumi.Output[str]], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create one route table per private subnet, routed through a NAT gateway

    With fewer NAT gateways than subnets (single NAT mode) the subnets share
    NAT gateways round-robin.
    """
    tags = tags or {}

    route_tables = []
    associations = []
    for i, subnet_id in enumerate(subnet_ids):
        route_table = aws.ec2.RouteTable(
            f"{name}-private-rt-{i+1}",
            vpc_id=vpc_id,
            tags={
                **tags,
                "Name": f"{name}-private-rt-{i+1}",
                "Module": "network"
            }
        )
        aws.ec2.Route(
            f"{name}-private-route-{i+1}",
            route_table_id=route_table.id,
            destination_cidr_block="0.0.0.0/0",
            nat_gateway_id=nat_gateway_ids[i % len(nat_gateway_ids)]
        )
        associations.append(aws.ec2.RouteTableAssociation(
            f"{name}-private-rta-{i+1}",
            subnet_id=subnet_id,
            route_table_id=route_table.id
        ))
        route_tables.append(route_table)

    return {
        "route_tables": route_tables,
        "associations": associations,
        "route_table_ids": [rt.id for rt in route_tables]
    }


def create_data_route_table(name: str, vpc_id: pulumi.Output[str], subnet_ids: List[pulumi.Output[str]],
                            tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create route table for isolated data subnets (local route only)
    """
    tags = tags or {}

    route_table = aws.ec2.RouteTable(
        f"{name}-data-rt",
        vpc_id=vpc_id,
        tags={
            **tags,
            "Name": f"{name}-data-rt",
            "Module": "network"
        }
    )

    associations = []
    for i, subnet_id in enumerate(subnet_ids):
        associations.append(aws.ec2.RouteTableAssociation(
            f"{name}-data-rta-{i+1}",
            subnet_id=subnet_id,
            route_table_id=route_table.id
        ))

    return {
        "route_table": route_table,
        "associations": associations,
        "route_table_id": route_table.id
    }


def create_network_resources(name: str, cluster_name: str, vpc_cidr: str,
                             public_subnet_cidrs: List[str],
                             private_subnet_cidrs: List[str],
                             data_subnet_cidrs: List[str],
                             nat_gateway_count: int = 1,
                             tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create complete three-tier network

    Args:
        name: Resource name prefix
        cluster_name: EKS cluster name used in subnet discovery tags
        vpc_cidr: VPC CIDR block
        public_subnet_cidrs: Public subnet CIDRs, one per AZ
        private_subnet_cidrs: Private subnet CIDRs, one per AZ
        data_subnet_cidrs: Data subnet CIDRs, one per AZ
        nat_gateway_count: Number of NAT gateways (1 or one per AZ)
        tags: Additional tags for all resources

    Returns:
        Dict with all network resources and outputs
    """
    tags = tags or {}
    az_count = len(private_subnet_cidrs)

    azs = aws.get_availability_zones(state="available")
    if len(azs.names) < az_count:
        raise ValueError(
            f"Region offers {len(azs.names)} availability zones, {az_count} requested"
        )
    availability_zones = azs.names[:az_count]

    vpc_result = create_vpc(name, vpc_cidr, tags)
    igw_result = create_internet_gateway(name, vpc_result["vpc_id"], tags)

    public_result = create_subnets(name, "public", vpc_result["vpc_id"], public_subnet_cidrs,
                                   availability_zones, cluster_name, tags)
    private_result = create_subnets(name, "private", vpc_result["vpc_id"], private_subnet_cidrs,
                                    availability_zones, cluster_name, tags)
    data_result = create_subnets(name, "data", vpc_result["vpc_id"], data_subnet_cidrs,
                                 availability_zones, cluster_name, tags)

    nat_result = create_nat_gateways(name, public_result["subnet_ids"], nat_gateway_count,
                                     igw_result["igw"], tags)

    public_rt_result = create_public_route_table(name, vpc_result["vpc_id"], igw_result["igw_id"],
                                                 public_result["subnet_ids"], tags)
    private_rt_result = create_private_route_tables(name, vpc_result["vpc_id"], nat_result["nat_gateway_ids"],
                                                    private_result["subnet_ids"], tags)
    data_rt_result = create_data_route_table(name, vpc_result["vpc_id"], data_result["subnet_ids"], tags)

    pulumi.log.info(
        f"Network {name}: {az_count} AZs, {nat_gateway_count} NAT gateway(s), CIDR {vpc_cidr}"
    )

    return {
        "vpc_id": vpc_result["vpc_id"],
        "vpc_cidr_block": vpc_result["vpc_cidr_block"],
        "public_subnet_ids": public_result["subnet_ids"],
        "private_subnet_ids": private_result["subnet_ids"],
        "data_subnet_ids": data_result["subnet_ids"],
        "availability_zones": availability_zones,
        "nat_gateway_ids": nat_result["nat_gateway_ids"],
        # Keep references to all resources for dependencies
        "_vpc": vpc_result["vpc"],
        "_igw": igw_result["igw"],
        "_public_subnets": public_result["subnets"],
        "_private_subnets": private_result["subnets"],
        "_data_subnets": data_result["subnets"],
        "_nat_gateways": nat_result["nat_gateways"],
        "_public_route_table": public_rt_result["route_table"],
        "_private_route_tables": private_rt_result["route_tables"],
        "_data_route_table": data_rt_result["route_table"]
    }
