"""
Bundled sample merchants, in the dashboard's camelCase JSON shape.

Used when no external dataset is loaded (local runs, demos, tests).
"""

SAMPLE_MERCHANTS = [
    {
        "id": "M001",
        "name": "海底捞火锅",
        "category": "餐饮-火锅",
        "floor": "L4",
        "shopNumber": "401",
        "area": 450,
        "rent": 132000,
        "lastMonthRevenue": 173000,
        "rentToSalesRatio": 0.28,
        "status": "operating",
        "riskLevel": "high",
        "totalScore": 45,
        "metrics": {
            "collection": 60,
            "operational": 35,
            "siteQuality": 50,
            "customerReview": 45,
            "riskResistance": 35,
        },
        "createdAt": "2024-03-01",
        "updatedAt": "2026-01-20",
    },
    {
        "id": "M002",
        "name": "星巴克咖啡",
        "category": "餐饮-饮品",
        "floor": "L1",
        "shopNumber": "105",
        "area": 180,
        "rent": 45000,
        "lastMonthRevenue": 280000,
        "rentToSalesRatio": 0.16,
        "status": "operating",
        "riskLevel": "none",
        "totalScore": 88,
        "metrics": {
            "collection": 95,
            "operational": 90,
            "siteQuality": 85,
            "customerReview": 88,
            "riskResistance": 82,
        },
        "createdAt": "2023-06-15",
        "updatedAt": "2026-01-20",
    },
    {
        "id": "M003",
        "name": "优衣库",
        "category": "零售-服饰",
        "floor": "L2",
        "shopNumber": "201",
        "area": 800,
        "rent": 180000,
        "lastMonthRevenue": 950000,
        "rentToSalesRatio": 0.19,
        "status": "operating",
        "riskLevel": "low",
        "totalScore": 85,
        "metrics": {
            "collection": 100,
            "operational": 85,
            "siteQuality": 80,
            "customerReview": 82,
            "riskResistance": 78,
        },
        "createdAt": "2023-01-10",
        "updatedAt": "2026-01-17",
    },
    {
        "id": "M004",
        "name": "周大福珠宝",
        "category": "零售-珠宝",
        "floor": "L1",
        "shopNumber": "108",
        "area": 120,
        "rent": 28000,
        "lastMonthRevenue": 420000,
        "rentToSalesRatio": 0.067,
        "status": "operating",
        "riskLevel": "none",
        "totalScore": 92,
        "metrics": {
            "collection": 100,
            "operational": 92,
            "siteQuality": 90,
            "customerReview": 88,
            "riskResistance": 90,
        },
        "createdAt": "2022-11-20",
        "updatedAt": "2026-01-15",
    },
    {
        "id": "M005",
        "name": "绿茶餐厅",
        "category": "餐饮-正餐",
        "floor": "L3",
        "shopNumber": "305",
        "area": 380,
        "rent": 95000,
        "lastMonthRevenue": 320000,
        "rentToSalesRatio": 0.297,
        "status": "operating",
        "riskLevel": "medium",
        "totalScore": 58,
        "metrics": {
            "collection": 75,
            "operational": 55,
            "siteQuality": 60,
            "customerReview": 52,
            "riskResistance": 48,
        },
        "createdAt": "2024-05-08",
        "updatedAt": "2026-01-19",
    },
    {
        "id": "M006",
        "name": "万达影城",
        "category": "主力店-影城",
        "floor": "L5",
        "shopNumber": "501",
        "area": 2500,
        "rent": 280000,
        "lastMonthRevenue": 2100000,
        "rentToSalesRatio": 0.133,
        "status": "operating",
        "riskLevel": "low",
        "totalScore": 82,
        "metrics": {
            "collection": 95,
            "operational": 80,
            "siteQuality": 78,
            "customerReview": 85,
            "riskResistance": 72,
        },
        "createdAt": "2022-08-01",
        "updatedAt": "2026-01-16",
    },
    {
        "id": "M007",
        "name": "鲜果时光奶茶店",
        "category": "餐饮-饮品",
        "floor": "L3",
        "shopNumber": "312",
        "area": 60,
        "rent": 18000,
        "lastMonthRevenue": 40000,
        "rentToSalesRatio": 0.45,
        "status": "operating",
        "riskLevel": "critical",
        "totalScore": 28,
        "metrics": {
            "collection": 30,
            "operational": 25,
            "siteQuality": 35,
            "customerReview": 30,
            "riskResistance": 20,
        },
        "createdAt": "2025-04-12",
        "updatedAt": "2026-01-21",
    },
    {
        "id": "M008",
        "name": "海底捞外卖站",
        "category": "餐饮-火锅",
        "floor": "B1",
        "shopNumber": "B12",
        "area": 90,
        "rent": 22000,
        "lastMonthRevenue": 98000,
        "rentToSalesRatio": 0.224,
        "status": "operating",
        "riskLevel": "medium",
        "totalScore": 64,
        "metrics": {
            "collection": 80,
            "operational": 60,
            "siteQuality": 62,
            "customerReview": 66,
            "riskResistance": 52,
        },
        "createdAt": "2025-09-01",
        "updatedAt": "2026-01-18",
    },
]
